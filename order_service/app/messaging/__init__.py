from .producer import LoggingProducer, RabbitMQProducer

__all__ = ["LoggingProducer", "RabbitMQProducer"]
