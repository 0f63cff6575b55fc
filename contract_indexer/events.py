# events.py
import json
import logging
from typing import Any, Callable, Dict, List, Union

from .helpers import abi_signature, event_topic, method_selector

logger = logging.getLogger(__name__)

# (name, signature, topic0) -> event id; find-or-create keyed by name
EventRegistry = Callable[..., int]
# (name, signature, selector) -> method id; find-or-create keyed by signature
MethodRegistry = Callable[..., int]

ABI = Union[str, List[Dict[str, Any]], None]


def _entries(abi: ABI, kind: str) -> List[Dict[str, Any]]:
    if not abi:
        return []
    if isinstance(abi, str):
        abi = json.loads(abi)
    return [e for e in abi if isinstance(e, dict) and e.get("type") == kind]


def event_entries(abi: ABI) -> List[Dict[str, Any]]:
    return _entries(abi, "event")


def method_entries(abi: ABI) -> List[Dict[str, Any]]:
    return _entries(abi, "function")


def event_names(abi: ABI) -> List[str]:
    """Event names in ABI order; duplicates are kept."""
    return [e.get("name") for e in event_entries(abi)]


def resolve_event_ids(abi: ABI, registry: EventRegistry) -> List[int]:
    ids = []
    for entry in event_entries(abi):
        sig = abi_signature(entry)
        ids.append(registry(entry.get("name"), signature=sig, topic0=event_topic(sig)))
    logger.debug("[events] resolved %d event ids", len(ids))
    return ids


def resolve_method_ids(abi: ABI, registry: MethodRegistry) -> List[int]:
    ids = []
    for entry in method_entries(abi):
        sig = abi_signature(entry)
        ids.append(registry(entry.get("name"), signature=sig, selector=method_selector(sig)))
    logger.debug("[events] resolved %d method ids", len(ids))
    return ids
