import json

import pika
import structlog

logger = structlog.get_logger(__name__)


class RabbitMQProducer:
    """
    Publishes domain events to a RabbitMQ topic exchange.

    A connection is opened per publish and closed right after, so one
    producer can be shared by concurrent request handlers. Events are
    published after the database commit; a broker failure is logged and
    never undoes committed state.
    """

    def __init__(self, host: str, exchange_name: str = "events", exchange_type: str = "topic"):
        self.host = host
        self.exchange_name = exchange_name
        self.exchange_type = exchange_type

    def _connect(self):
        parameters = pika.ConnectionParameters(
            host=self.host,
            heartbeat=600,
            blocked_connection_timeout=300,
        )
        connection = pika.BlockingConnection(parameters)
        channel = connection.channel()
        # Declare the exchange (durable ensures it survives restarts)
        channel.exchange_declare(
            exchange=self.exchange_name,
            exchange_type=self.exchange_type,
            durable=True,
        )
        return connection, channel

    def publish(self, routing_key: str, message: dict) -> bool:
        """
        Publishes a message to the exchange with a specific routing key.

        Args:
            routing_key (str): The topic key (e.g., 'order.created', 'payment.failed').
            message (dict): The data payload to send.

        Returns:
            bool: True if the broker accepted the message.
        """
        connection = None
        try:
            connection, channel = self._connect()
            channel.basic_publish(
                exchange=self.exchange_name,
                routing_key=routing_key,
                body=json.dumps(message, default=str),
                properties=pika.BasicProperties(
                    delivery_mode=2,  # Make message persistent
                    content_type="application/json",
                ),
            )
            logger.info("event_published", routing_key=routing_key, payload=message)
            return True
        except pika.exceptions.AMQPError as exc:
            logger.error("event_publish_failed", routing_key=routing_key, error=repr(exc), payload=message)
            return False
        finally:
            if connection is not None and connection.is_open:
                connection.close()


class LoggingProducer:
    """Stand-in used when no broker is configured: events only go to the log."""

    def publish(self, routing_key: str, message: dict) -> bool:
        logger.info("event_recorded", routing_key=routing_key, payload=message)
        return True
