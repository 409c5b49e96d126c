"""
Server-Sent Events (SSE) endpoints for real-time notifications.
Streams the events published by app.services.event_publisher.
"""
import asyncio
import json
import os
import logging
from typing import AsyncGenerator

import redis.asyncio as aioredis
from fastapi import APIRouter, Request
from fastapi.responses import StreamingResponse
from app.db_helpers import get_user_id
from app.services.event_publisher import EventPublisher

logger = logging.getLogger(__name__)

router = APIRouter()

HEARTBEAT_INTERVAL_SECONDS = 15


def format_sse(event_type: str, data: str) -> str:
    return f"event: {event_type}\ndata: {data}\n\n"


async def notification_event_generator(user_id: str, request: Request) -> AsyncGenerator[str, None]:
    """
    Async generator that streams a user's notification events from Redis Pub/Sub.

    Args:
        user_id: The user ID
        request: The incoming request, polled for client disconnects

    Yields:
        SSE-formatted event strings
    """
    redis_url = os.getenv("REDIS_URL", "redis://localhost:6379/0")
    redis_client = aioredis.from_url(redis_url, decode_responses=True)
    pubsub = redis_client.pubsub()
    channel = EventPublisher.channel(user_id)
    recent_key = EventPublisher.recent_key(user_id)

    try:
        await pubsub.subscribe(channel)
        logger.info(f"SSE client subscribed to channel: {channel}")

        yield format_sse("connected", json.dumps({"channel": channel}))

        # Replay events published shortly before the client connected (oldest first)
        recent_events = await redis_client.lrange(recent_key, 0, -1)
        for data in reversed(recent_events or []):
            yield format_sse(_event_type(data), data)

        loop = asyncio.get_running_loop()
        last_heartbeat = loop.time()

        while True:
            if await request.is_disconnected():
                break
            try:
                message = await asyncio.wait_for(
                    pubsub.get_message(ignore_subscribe_messages=True),
                    timeout=1.0
                )
                if message and message["type"] == "message":
                    data = message["data"]
                    yield format_sse(_event_type(data), data)
            except asyncio.TimeoutError:
                pass

            current_time = loop.time()
            if current_time - last_heartbeat >= HEARTBEAT_INTERVAL_SECONDS:
                yield format_sse("heartbeat", json.dumps({"timestamp": current_time}))
                last_heartbeat = current_time

    except asyncio.CancelledError:
        logger.info(f"SSE connection cancelled for channel: {channel}")
        raise
    except Exception as e:
        logger.error(f"SSE error for channel {channel}: {e}")
        yield format_sse("error", json.dumps({"error": str(e)}))
    finally:
        await pubsub.unsubscribe(channel)
        await pubsub.close()
        await redis_client.close()
        logger.info(f"SSE connection closed for channel: {channel}")


def _event_type(data: str) -> str:
    try:
        return json.loads(data).get("type", "message")
    except (json.JSONDecodeError, AttributeError):
        logger.warning(f"Invalid JSON in message: {data}")
        return "message"


def get_cors_origin() -> str:
    """Get allowed CORS origin from environment."""
    return os.getenv("FRONTEND_URL") or os.getenv("APP_URL", "http://localhost:3000")


@router.get("/notifications")
async def stream_notifications(request: Request):
    """
    Stream the user's notifications via Server-Sent Events.

    Events:
    - connected: Initial connection confirmation
    - notification: A new notification was created
    - unread_count: The unread counter changed (e.g. after mark-all-read)
    - heartbeat: Keep-alive ping (every 15 seconds)

    Returns:
        StreamingResponse with SSE content type
    """
    resolved_user_id = get_user_id()

    # Use configured frontend URL for CORS instead of wildcard
    cors_origin = get_cors_origin()

    return StreamingResponse(
        notification_event_generator(resolved_user_id, request),
        media_type="text/event-stream",
        headers={
            "Cache-Control": "no-cache",
            "Connection": "keep-alive",
            "X-Accel-Buffering": "no",  # Disable nginx buffering
            "Access-Control-Allow-Origin": cors_origin,
            "Access-Control-Allow-Credentials": "true",
        }
    )
