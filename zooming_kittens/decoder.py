"""Event decoder: normalized IPC records -> typed WindowEvent.

Records are newline-delimited JSON objects. Two shapes are accepted:

    {"event": "focus", "id": 12, "app_id": "kitty", "pid": 4242, "title": "zsh"}
    {"event": "focus", "window_id": 12, "window": {"id": 12, "app_id": "kitty", ...}}

The decoder is stateless.
"""

import json
import logging
from typing import Any, Dict, Union

from pydantic import TypeAdapter, ValidationError

from .errors import DecodeError, UnknownEventError
from .models import EVENT_TAGS, WindowEvent

logger = logging.getLogger(__name__)

RawMessage = Union[bytes, str, Dict[str, Any]]

_WINDOW_FIELDS = ("id", "app_id", "pid", "title")


class EventDecoder:
    """Decode one raw record into exactly one WindowEvent."""

    def __init__(self) -> None:
        self._adapter: TypeAdapter = TypeAdapter(WindowEvent)

    def decode(self, raw: RawMessage) -> WindowEvent:
        """Decode a raw record.

        Args:
            raw: One JSON record as bytes/str, or an already parsed dict

        Returns:
            FocusEvent, BlurEvent, CreateEvent or DestroyEvent

        Raises:
            UnknownEventError: If the variant tag is not one of the known events
            DecodeError: If the record is malformed or misses required fields
        """
        record = self._parse(raw)

        tag = record.get("event")
        if tag is None:
            raise DecodeError("Event record has no 'event' tag", context={"record": record})
        if not isinstance(tag, str) or tag not in EVENT_TAGS:
            raise UnknownEventError(tag)

        try:
            return self._adapter.validate_python(self._normalize(tag, record))
        except ValidationError as e:
            raise DecodeError(
                f"Invalid {tag} event: {e.error_count()} validation error(s)",
                context={"record": record, "errors": e.errors(include_url=False)},
            ) from e

    @staticmethod
    def _parse(raw: RawMessage) -> Dict[str, Any]:
        if isinstance(raw, dict):
            return raw

        if isinstance(raw, bytes):
            try:
                raw = raw.decode("utf-8")
            except UnicodeDecodeError as e:
                raise DecodeError(f"Event record is not valid UTF-8: {e}") from e

        try:
            record = json.loads(raw)
        except json.JSONDecodeError as e:
            raise DecodeError(f"Event record is not valid JSON: {e}") from e

        if not isinstance(record, dict):
            raise DecodeError(f"Event record must be a JSON object, got {type(record).__name__}")
        return record

    @staticmethod
    def _normalize(tag: str, record: Dict[str, Any]) -> Dict[str, Any]:
        """Fold the flat record shape into the nested model shape."""
        if "window" in record or "window_id" in record:
            data = dict(record)
            if "window_id" not in data and isinstance(data.get("window"), dict):
                data["window_id"] = data["window"].get("id")
            return data

        if "id" not in record:
            # Let validation report the missing field
            return {"event": tag}

        data: Dict[str, Any] = {"event": tag, "window_id": record["id"]}
        if tag != "destroy":
            data["window"] = {name: record.get(name) for name in _WINDOW_FIELDS}
        return data


def encode_record(event: WindowEvent) -> bytes:
    """Encode a WindowEvent as one flat newline-terminated record."""
    record: Dict[str, Any] = {"event": event.event, "id": event.window_id}
    if event.window is not None:
        record.update(
            app_id=event.window.app_id,
            pid=event.window.pid,
            title=event.window.title,
        )
    return (json.dumps(record) + "\n").encode()
