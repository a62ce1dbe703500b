from __future__ import annotations


def redis_from_url(url: str):
    import redis  # type: ignore

    return redis.Redis.from_url(url, decode_responses=True, socket_connect_timeout=5)
