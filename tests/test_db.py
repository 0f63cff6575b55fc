import pytest

from contract_indexer.catalog import Elementary
from contract_indexer.db import (
    ResolvedContract, add_contract, add_event, add_method, load_addresses, load_contracts, load_events,
    load_methods, load_states, transaction,
)
from contract_indexer.errors import PersistenceError
from contract_indexer.layout import SlotAssignment

ADDR = "0x5FbDB2315678afecb367f032d93F642f64180aa3"
OTHER = "0xe7f1725E7734CE288F8367e1Bb143E90bb3F0512"

SLOTS = (
    SlotAssignment("owner", 0, 0, 20, "address"),
    SlotAssignment("paused", 0, 20, 1, "bool"),
    SlotAssignment("balances", 1, 0, 32, "mapping(address=>uint256)", is_base_slot=True),
)


def contract(address=ADDR, **kw):
    kw.setdefault("name", "Vault")
    kw.setdefault("abi", [{"type": "event", "name": "Paused", "inputs": []}])
    kw.setdefault("slots", SLOTS)
    kw.setdefault("starting_block", 1234)
    return ResolvedContract(address=address, **kw)


def test_add_event_is_find_or_create(conn):
    a = add_event(conn, "Transfer", "Transfer(address,address,uint256)", "0xddf2")
    b = add_event(conn, "Approval")
    c = add_event(conn, "Transfer", "Transfer(address,uint256)", "0xother")
    assert a == c != b
    events = load_events(conn)
    assert events[0] == {
        "event_id": a, "name": "Transfer",
        "signature": "Transfer(address,address,uint256)", "topic0": "0xddf2",
    }
    assert events[1]["signature"] is None


def test_contract_round_trip(conn):
    eid = add_event(conn, "Paused")
    cid = add_contract(conn, contract(event_ids=(eid, eid)))

    [row] = load_contracts(conn)
    assert row["contract_id"] == cid
    assert row["address"] == ADDR
    assert row["name"] == "Vault"
    assert row["abi"] == [{"type": "event", "name": "Paused", "inputs": []}]
    assert row["starting_block"] == 1234
    assert row["events"] == [eid, eid]

    states = load_states(conn, cid)
    assert [(s["variable"], s["slot"], s["byte_offset"], s["size"], s["type"], s["is_base_slot"])
            for s in states] == [
        ("owner", 0, 0, 20, "address", False),
        ("paused", 0, 20, 1, "bool", False),
        ("balances", 1, 0, 32, "mapping(address=>uint256)", True),
    ]
    assert load_addresses(conn) == [ADDR]


def test_load_by_ids(conn):
    first = add_contract(conn, contract(ADDR))
    second = add_contract(conn, contract(OTHER, abi=None, slots=()))
    assert [c["contract_id"] for c in load_contracts(conn, [second])] == [second]
    assert load_contracts(conn, []) == []
    assert load_contracts(conn, [second])[0]["abi"] is None
    assert {s["contract_id"] for s in load_states(conn)} == {first}
    assert load_states(conn, second) == []


def test_duplicate_address_leaves_no_partial_rows(conn):
    add_contract(conn, contract())
    with pytest.raises(PersistenceError):
        add_contract(conn, contract(name="Again", slots=(SlotAssignment("x", 0, 0, 32, "uint256"),)))
    assert len(load_contracts(conn)) == 1
    assert len(load_states(conn)) == len(SLOTS)
    assert not conn.in_transaction


def test_failed_state_insert_rolls_back_contract(conn):
    bad = SlotAssignment("x", 0, 0, 32, None)  # type column is NOT NULL
    with pytest.raises(PersistenceError):
        add_contract(conn, contract(slots=(bad,)))
    assert load_contracts(conn) == []
    assert load_addresses(conn) == []


def test_elementary_sizes_survive_storage(conn):
    u = Elementary("uint", 96)
    cid = add_contract(conn, contract(slots=(SlotAssignment("v", 3, 4, u.size, u.name),)))
    [s] = load_states(conn, cid)
    assert (s["slot"], s["byte_offset"], s["size"], s["type"]) == (3, 4, 12, "uint96")


def test_add_method_is_keyed_by_signature(conn):
    a = add_method(conn, "transfer", "transfer(address,uint256)", "0xa9059cbb")
    b = add_method(conn, "transfer", "transfer(address,uint256,bytes)", "0xbe45fd62")
    assert add_method(conn, "transfer", "transfer(address,uint256)", "0xa9059cbb") == a != b
    assert load_methods(conn) == [
        {"method_id": a, "name": "transfer", "signature": "transfer(address,uint256)", "selector": "0xa9059cbb"},
        {"method_id": b, "name": "transfer", "signature": "transfer(address,uint256,bytes)",
         "selector": "0xbe45fd62"},
    ]


def test_contract_lists_its_methods(conn):
    m = add_method(conn, "pause", "pause()", "0x8456cb59")
    cid = add_contract(conn, contract(method_ids=(m,)))
    [row] = load_contracts(conn, [cid])
    assert row["methods"] == [m]
    assert row["events"] == []


def test_transaction_rolls_back_everything_inside(conn):
    with pytest.raises(PersistenceError):
        with transaction(conn):
            add_event(conn, "Paused")
            add_method(conn, "pause", "pause()", "0x8456cb59")
            add_contract(conn, contract())
            add_contract(conn, contract())  # duplicate address
    assert not conn.in_transaction
    assert load_events(conn) == []
    assert load_methods(conn) == []
    assert load_contracts(conn) == []


def test_transaction_commits(conn):
    with transaction(conn):
        add_event(conn, "Paused")
        add_contract(conn, contract())
    assert not conn.in_transaction
    assert [e["name"] for e in load_events(conn)] == ["Paused"]
    assert load_addresses(conn) == [ADDR]
