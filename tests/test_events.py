import json

from contract_indexer.events import (
    event_entries, event_names, method_entries, resolve_event_ids, resolve_method_ids,
)
from contract_indexer.helpers import abi_signature, event_topic, method_selector

TRANSFER = {
    "type": "event", "name": "Transfer", "anonymous": False,
    "inputs": [
        {"name": "from", "type": "address", "indexed": True},
        {"name": "to", "type": "address", "indexed": True},
        {"name": "value", "type": "uint256", "indexed": False},
    ],
}
APPROVAL = {
    "type": "event", "name": "Approval",
    "inputs": [
        {"name": "owner", "type": "address", "indexed": True},
        {"name": "spender", "type": "address", "indexed": True},
        {"name": "value", "type": "uint256", "indexed": False},
    ],
}
FN = {"type": "function", "name": "transfer", "inputs": [], "outputs": []}


class FakeRegistry:
    def __init__(self):
        self.ids = {}
        self.calls = []

    def __call__(self, name, signature=None, topic0=None):
        self.calls.append((name, signature, topic0))
        return self.ids.setdefault(name, len(self.ids) + 1)


def test_no_abi():
    reg = FakeRegistry()
    assert resolve_event_ids(None, reg) == []
    assert resolve_event_ids([], reg) == []
    assert reg.calls == []


def test_only_events_in_abi_order():
    abi = [APPROVAL, FN, TRANSFER]
    assert event_names(abi) == ["Approval", "Transfer"]
    assert event_names(json.dumps(abi)) == ["Approval", "Transfer"]
    assert event_entries(abi) == [APPROVAL, TRANSFER]


def test_duplicate_event_names_share_an_id():
    reg = FakeRegistry()
    ids = resolve_event_ids([TRANSFER, APPROVAL, TRANSFER], reg)
    assert ids == [1, 2, 1]
    assert [c[0] for c in reg.calls] == ["Transfer", "Approval", "Transfer"]


def test_signature_and_topic():
    sig = abi_signature(TRANSFER)
    assert sig == "Transfer(address,address,uint256)"
    assert event_topic(sig) == "0xddf252ad1be2c89b69c2b068fc378daa952ba7f163c4a11628f55a4df523b3ef"
    reg = FakeRegistry()
    resolve_event_ids([TRANSFER], reg)
    assert reg.calls == [("Transfer", sig, event_topic(sig))]


def test_tuple_signature():
    entry = {
        "type": "event", "name": "Filled",
        "inputs": [
            {"name": "id", "type": "uint256"},
            {"name": "orders", "type": "tuple[]", "components": [
                {"name": "maker", "type": "address"},
                {"name": "amounts", "type": "uint128[2]"},
            ]},
        ],
    }
    assert abi_signature(entry) == "Filled(uint256,(address,uint128[2])[])"


def test_registry_ids_are_stable_across_contracts(conn):
    from functools import partial

    from contract_indexer.db import add_event, load_events

    registry = partial(add_event, conn)
    first = resolve_event_ids([TRANSFER, APPROVAL], registry)
    second = resolve_event_ids([APPROVAL, TRANSFER, TRANSFER], registry)
    assert second == [first[1], first[0], first[0]]
    assert [e["name"] for e in load_events(conn)] == ["Transfer", "Approval"]


# ---------- methods ----------
BALANCE_OF = {"type": "function", "name": "balanceOf", "stateMutability": "view",
              "inputs": [{"name": "who", "type": "address"}],
              "outputs": [{"name": "", "type": "uint256"}]}
TRANSFER_FN = {"type": "function", "name": "transfer",
               "inputs": [{"name": "to", "type": "address"}, {"name": "value", "type": "uint256"}],
               "outputs": [{"name": "", "type": "bool"}]}


class FakeMethodRegistry:
    def __init__(self):
        self.ids = {}
        self.calls = []

    def __call__(self, name, signature=None, selector=None):
        self.calls.append((name, signature, selector))
        return self.ids.setdefault(signature, len(self.ids) + 1)


def test_method_selectors():
    assert method_selector(abi_signature(TRANSFER_FN)) == "0xa9059cbb"
    assert method_selector(abi_signature(BALANCE_OF)) == "0x70a08231"


def test_methods_in_abi_order():
    abi = [TRANSFER, BALANCE_OF, {"type": "constructor", "inputs": []}, TRANSFER_FN]
    assert method_entries(abi) == [BALANCE_OF, TRANSFER_FN]
    reg = FakeMethodRegistry()
    assert resolve_method_ids(abi, reg) == [1, 2]
    assert reg.calls[1] == ("transfer", "transfer(address,uint256)", "0xa9059cbb")
    assert resolve_method_ids(None, reg) == []


def test_overloads_are_distinct_methods(conn):
    from functools import partial

    from contract_indexer.db import add_method, load_methods

    overload = dict(TRANSFER_FN, inputs=TRANSFER_FN["inputs"] + [{"name": "data", "type": "bytes"}])
    ids = resolve_method_ids([TRANSFER_FN, overload, TRANSFER_FN], partial(add_method, conn))
    assert ids[0] == ids[2] != ids[1]
    assert [(m["name"], m["signature"]) for m in load_methods(conn)] == [
        ("transfer", "transfer(address,uint256)"),
        ("transfer", "transfer(address,uint256,bytes)"),
    ]
