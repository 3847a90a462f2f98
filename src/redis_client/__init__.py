from redis_client.publisher import RedisPublisher, RedisSubscription

__all__ = ["RedisPublisher", "RedisSubscription"]
