from api.src.services.github import (
    verify_signature,
    parse_webhook_payload,
    parse_push_payload,
    parse_pull_request_payload,
)
from api.src.services.queue import (
    enqueue_event,
    next_build_number,
    request_cancel,
    get_run_status,
    get_queue_length,
)

__all__ = [
    "verify_signature",
    "parse_webhook_payload",
    "parse_push_payload",
    "parse_pull_request_payload",
    "enqueue_event",
    "next_build_number",
    "request_cancel",
    "get_run_status",
    "get_queue_length",
]
