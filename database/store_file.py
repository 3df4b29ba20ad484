"""
FileCallStore — the in-memory store, mirrored to one JSON file per collection.

    {data_dir}/calls.json  redirects.json  messages.json
               recipients.json  channels.json  sites.json

Every successful write rewrites the collection it touched (write to a
temporary file, then rename). Meant for a single process on a single host;
two processes sharing a directory will overwrite each other.
"""
from __future__ import annotations

import functools
import json
import structlog
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, Optional

from pydantic import BaseModel

from database.store_memory import InMemoryCallStore
from models.schemas import CallRecord, ChannelStats, Message, Recipient, RedirectEntry, Site

logger = structlog.get_logger()


@dataclass(frozen=True)
class _Collection:
    attr: str                       # InMemoryCallStore dict holding it
    model: type[BaseModel]
    key: Callable[[str], Any] = str


_COLLECTIONS: dict[str, _Collection] = {
    "calls": _Collection("_calls", CallRecord),
    "redirects": _Collection("_redirects", RedirectEntry),
    "messages": _Collection("_messages", Message, int),
    "recipients": _Collection("_recipients", Recipient),
    "channels": _Collection("_channels", ChannelStats, int),
    "sites": _Collection("_sites", Site),
}


def _persists(collection: str, when: Callable[[Any], bool] = lambda result: True):
    """Flush ``collection`` after the wrapped write, if ``when(result)``."""
    def decorate(method):
        @functools.wraps(method)
        async def wrapper(self: FileCallStore, *args, **kwargs):
            result = await method(self, *args, **kwargs)
            if when(result):
                self.flush(collection)
            return result
        return wrapper
    return decorate


def _changed(result: Any) -> bool:
    return bool(result)


class FileCallStore(InMemoryCallStore):

    def __init__(self, data_dir: str = "./data"):
        super().__init__()
        self.data_dir = Path(data_dir)
        self.data_dir.mkdir(parents=True, exist_ok=True)
        for name in _COLLECTIONS:
            self._load(name)
        self._key_index = {r.object_key: cid for cid, r in self._calls.items()}
        logger.info("file_store_opened", data_dir=str(self.data_dir),
                    calls=len(self._calls), recipients=len(self._recipients))

    def _path(self, name: str) -> Path:
        return self.data_dir / f"{name}.json"

    def _load(self, name: str) -> None:
        collection = _COLLECTIONS[name]
        path = self._path(name)
        if not path.exists():
            return
        try:
            raw = json.loads(path.read_text())
            items = {collection.key(k): collection.model.model_validate(v) for k, v in raw.items()}
        except (ValueError, AttributeError) as e:
            # A damaged file is left in place for inspection; the collection starts empty
            logger.error("file_store_collection_unreadable", collection=name, error=str(e))
            return
        setattr(self, collection.attr, items)

    def flush(self, name: str) -> None:
        collection = _COLLECTIONS[name]
        items = getattr(self, collection.attr)
        data = {str(k): v.model_dump(mode="json") for k, v in items.items()}
        path = self._path(name)
        tmp = path.with_suffix(".json.tmp")
        tmp.write_text(json.dumps(data, indent=1, sort_keys=True))
        tmp.replace(path)

    def flush_all(self) -> None:
        for name in _COLLECTIONS:
            self.flush(name)

    # ── Writes ────────────────────────────────────────────

    put_call = _persists("calls")(InMemoryCallStore.put_call)
    update_call = _persists("calls", _changed)(InMemoryCallStore.update_call)
    claim_page_sent = _persists("calls", _changed)(InMemoryCallStore.claim_page_sent)
    delete_call = _persists("calls", _changed)(InMemoryCallStore.delete_call)

    put_redirect = _persists("redirects")(InMemoryCallStore.put_redirect)

    async def get_redirect(self, old_key: str, now: Optional[float] = None) -> Optional[RedirectEntry]:
        before = len(self._redirects)
        entry = await super().get_redirect(old_key, now)
        if len(self._redirects) != before:
            self.flush("redirects")
        return entry

    save_message = _persists("messages")(InMemoryCallStore.save_message)
    merge_message_metrics = _persists("messages")(InMemoryCallStore.merge_message_metrics)

    upsert_recipient = _persists("recipients")(InMemoryCallStore.upsert_recipient)
    update_recipient = _persists("recipients", _changed)(InMemoryCallStore.update_recipient)

    record_channel_activity = _persists("channels")(InMemoryCallStore.record_channel_activity)
    update_site = _persists("sites")(InMemoryCallStore.update_site)
