"""SSE (Server-Sent Events) endpoint streaming every event bus event."""

import logging
from typing import Generator, Optional

from flask import Blueprint, Response, current_app, request

from ..services.broadcaster import Broadcaster

logger = logging.getLogger(__name__)

sse_bp = Blueprint("sse", __name__)


def parse_filter_types(types_param: Optional[str]) -> Optional[list[str]]:
    """Split a comma-separated ``types`` query parameter."""
    if not types_param:
        return None
    return [t.strip() for t in types_param.split(",") if t.strip()]


def generate_events(
    broadcaster: Broadcaster,
    client_id: str,
    last_event_id: Optional[int] = None,
) -> Generator[str, None, None]:
    """
    Yield SSE frames for a registered client until it goes inactive.

    Args:
        broadcaster: The broadcaster the client is registered with
        client_id: The registered client ID
        last_event_id: If set, replay buffered events after this ID first
    """
    # Flush headers immediately so EventSource.onopen fires
    yield ": heartbeat\n\n"

    if last_event_id is not None:
        client = broadcaster.get_client(client_id)
        replayed = broadcaster.get_replay_events(last_event_id, client.filter if client else None)
        if replayed:
            logger.info(f"Replaying {len(replayed)} events for client {client_id}")
        for event in replayed:
            yield event.format()

    try:
        while True:
            event = broadcaster.get_next_event(client_id)
            if event is None:
                yield ": heartbeat\n\n"
            else:
                yield event.format()

            client = broadcaster.get_client(client_id)
            if client is None or not client.is_active:
                break

    except GeneratorExit:
        logger.info(f"Client {client_id} disconnected (generator exit)")
    finally:
        broadcaster.unregister_client(client_id)


@sse_bp.route("/api/events/stream")
def events():
    """
    SSE endpoint for real-time event streaming.

    Query Parameters:
        types: Comma-separated list of event types to receive
        target: Only events whose payload ``target_id`` matches

    Headers:
        Last-Event-ID: Replay buffered events after this ID

    Returns:
        SSE stream or HTTP 503 if the connection limit is reached
    """
    broadcaster = current_app.extensions["broadcaster"]

    types = parse_filter_types(request.args.get("types"))
    target_id = request.args.get("target") or None

    last_event_id: Optional[int] = None
    last_event_id_raw = request.headers.get("Last-Event-ID")
    if last_event_id_raw:
        try:
            last_event_id = int(last_event_id_raw)
        except ValueError:
            logger.warning(f"Invalid Last-Event-ID: {last_event_id_raw}")

    client_id = broadcaster.register_client(types=types, target_id=target_id)
    if client_id is None:
        logger.warning("SSE connection rejected: limit reached")
        response = Response(
            "Service temporarily unavailable - connection limit reached",
            status=503,
            mimetype="text/plain",
        )
        response.headers["Retry-After"] = str(broadcaster.retry_after)
        return response

    logger.info(f"SSE client {client_id} connected: types={types}, target={target_id}")

    response = Response(
        generate_events(broadcaster, client_id, last_event_id=last_event_id),
        mimetype="text/event-stream",
    )
    response.headers["Cache-Control"] = "no-cache"
    response.headers["X-Accel-Buffering"] = "no"
    return response
