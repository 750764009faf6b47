"""Structured run events correlated by run and invocation identifiers."""

import logging
import uuid
from typing import Any, Dict, Optional

from app.config import settings

logger = logging.getLogger("app.run")


class RunLogger:
    """Emits named events for one invocation of one Run.

    Every event carries ``run_id`` and ``invocation_id`` and, while an item
    is being processed, ``item_id`` and ``item_index``. Fields travel in
    ``extra={"data": ...}`` so the JSON formatter can emit them verbatim.
    """

    def __init__(self, run_id, invocation_id: Optional[str] = None, trace_id: Optional[str] = None):
        self.run_id = str(run_id)
        self.invocation_id = invocation_id or str(uuid.uuid4())
        self.trace_id = trace_id
        self._item: Optional[Dict[str, Any]] = None

    def set_current_item(self, item_id, index: int) -> None:
        self._item = {"item_id": str(item_id), "item_index": index}

    def clear_current_item(self) -> None:
        self._item = None

    def _data(self, fields: Dict[str, Any]) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            "run_id": self.run_id,
            "invocation_id": self.invocation_id,
            "environment": settings.ENVIRONMENT,
        }
        if self.trace_id:
            data["trace_id"] = self.trace_id
        if self._item:
            data.update(self._item)
        data.update({k: v for k, v in fields.items() if v is not None})
        return data

    def info(self, event: str, **fields: Any) -> None:
        logger.info(event, extra={"data": self._data(fields)})

    def warning(self, event: str, **fields: Any) -> None:
        logger.warning(event, extra={"data": self._data(fields)})

    def error(self, event: str, error: Any = None, **fields: Any) -> None:
        if error is not None:
            fields["error"] = str(error)
            fields["error_type"] = type(error).__name__ if isinstance(error, BaseException) else None
        logger.error(event, extra={"data": self._data(fields)})
