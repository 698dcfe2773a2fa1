"""
Command and event messages exchanged between the panel and the orchestrator.

Messages are plain dicts with a ``type`` key so they survive a JSON round
trip unchanged.
"""

from enum import Enum
from typing import Any, Dict, List, Optional

from place_harvester.data.models import PlaceRecord, SessionSnapshot


class CommandType(Enum):
    """Panel -> orchestrator."""
    GET_STATE = "get_state"
    SET_COLLECTED_URLS = "set_collected_urls"
    PROCESS_URL = "process_url"
    CLEAR_CAPTURED_DATA = "clear_captured_data"
    PROCESSING_COMPLETE = "processing_complete"


class EventType(Enum):
    """Orchestrator -> panel."""
    XHR_CAPTURED = "xhr_captured"
    AUTH_FAILED = "auth_failed"
    RETRY_PROCESSING = "retry_processing"


def message_type(message: Dict[str, Any]) -> Optional[str]:
    return message.get("type") if isinstance(message, dict) else None


def get_state() -> Dict[str, Any]:
    return {"type": CommandType.GET_STATE.value}


def set_collected_urls(urls: List[str]) -> Dict[str, Any]:
    return {"type": CommandType.SET_COLLECTED_URLS.value, "urls": list(urls)}


def process_url(url: str, state: Optional[SessionSnapshot] = None,
                request_id: Optional[str] = None) -> Dict[str, Any]:
    message = {"type": CommandType.PROCESS_URL.value, "url": url}
    if state is not None:
        message["state"] = state.to_wire()
    if request_id is not None:
        message["requestId"] = request_id
    return message


def clear_captured_data() -> Dict[str, Any]:
    return {"type": CommandType.CLEAR_CAPTURED_DATA.value}


def processing_complete() -> Dict[str, Any]:
    return {"type": CommandType.PROCESSING_COMPLETE.value}


def xhr_captured(url: str, record: PlaceRecord, state: SessionSnapshot,
                 request_id: Optional[str] = None) -> Dict[str, Any]:
    return {
        "type": EventType.XHR_CAPTURED.value,
        "url": url,
        "data": record.to_dict(),
        "currentState": state.to_wire(),
        "requestId": request_id,
    }


def auth_failed(url: str, error: str, request_id: Optional[str] = None) -> Dict[str, Any]:
    return {
        "type": EventType.AUTH_FAILED.value,
        "url": url,
        "error": error,
        "requestId": request_id,
    }


def retry_processing(url: str) -> Dict[str, Any]:
    return {"type": EventType.RETRY_PROCESSING.value, "url": url}
