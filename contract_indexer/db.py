import json, sqlite3, time
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional, Sequence

from . import config
from .errors import PersistenceError
from .layout import SlotAssignment


@dataclass(frozen=True)
class ResolvedContract:
    address: str
    name: str
    abi: Optional[List[Dict[str, Any]]]
    slots: Sequence[SlotAssignment] = field(default_factory=tuple)
    event_ids: Sequence[int] = field(default_factory=tuple)
    starting_block: Optional[int] = None
    method_ids: Sequence[int] = field(default_factory=tuple)


def db(path: str = None):
    conn = sqlite3.connect(path or config.DB_PATH, isolation_level=None, check_same_thread=False)
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA journal_mode=WAL;")
    conn.execute("PRAGMA synchronous=NORMAL;")
    conn.execute("PRAGMA temp_store=MEMORY;")
    conn.execute("PRAGMA foreign_keys=ON;")
    return conn

def ensure_schema(conn: sqlite3.Connection):
    conn.executescript("""
    CREATE TABLE IF NOT EXISTS contracts (
        contract_id     INTEGER PRIMARY KEY AUTOINCREMENT,
        address         TEXT NOT NULL UNIQUE,   -- checksum
        name            TEXT,
        abi             TEXT,                   -- json
        starting_block  INTEGER,
        created_at      INTEGER NOT NULL
    );

    -- event registry, one row per event name
    CREATE TABLE IF NOT EXISTS events (
        event_id   INTEGER PRIMARY KEY AUTOINCREMENT,
        name       TEXT NOT NULL UNIQUE,
        signature  TEXT,
        topic0     TEXT
    );

    -- ABI order kept, duplicates included
    CREATE TABLE IF NOT EXISTS contract_events (
        contract_id INTEGER NOT NULL REFERENCES contracts(contract_id) ON DELETE CASCADE,
        position    INTEGER NOT NULL,
        event_id    INTEGER NOT NULL REFERENCES events(event_id),
        PRIMARY KEY (contract_id, position)
    );

    -- method registry, one row per signature (overloads are distinct)
    CREATE TABLE IF NOT EXISTS methods (
        method_id  INTEGER PRIMARY KEY AUTOINCREMENT,
        name       TEXT NOT NULL,
        signature  TEXT NOT NULL UNIQUE,
        selector   TEXT NOT NULL
    );
    CREATE INDEX IF NOT EXISTS idx_methods_selector ON methods(selector);

    CREATE TABLE IF NOT EXISTS contract_methods (
        contract_id INTEGER NOT NULL REFERENCES contracts(contract_id) ON DELETE CASCADE,
        position    INTEGER NOT NULL,
        method_id   INTEGER NOT NULL REFERENCES methods(method_id),
        PRIMARY KEY (contract_id, position)
    );

    CREATE TABLE IF NOT EXISTS states (
        contract_id   INTEGER NOT NULL REFERENCES contracts(contract_id) ON DELETE CASCADE,
        position      INTEGER NOT NULL,
        variable      TEXT NOT NULL,
        slot          INTEGER NOT NULL,
        byte_offset   INTEGER NOT NULL,
        size          INTEGER NOT NULL,
        type          TEXT NOT NULL,
        is_base_slot  INTEGER NOT NULL DEFAULT 0,
        PRIMARY KEY (contract_id, position)
    );
    CREATE INDEX IF NOT EXISTS idx_states_slot ON states(contract_id, slot);
    """)

def row_to_dict(row: sqlite3.Row) -> Dict[str, Any]:
    return {k: row[k] for k in row.keys()}

@contextmanager
def transaction(conn):
    """BEGIN ... COMMIT around the block, ROLLBACK if it raises; joins a transaction already open."""
    if conn.in_transaction:
        yield conn
        return
    conn.execute("BEGIN")
    try:
        yield conn
    except BaseException:
        if conn.in_transaction:
            conn.execute("ROLLBACK")
        raise
    conn.execute("COMMIT")

# ---------- writes ----------
def add_event(conn, name: str, signature: str = None, topic0: str = None) -> int:
    """Find-or-create by name; the first signature seen for a name is kept."""
    try:
        conn.execute("INSERT OR IGNORE INTO events(name, signature, topic0) VALUES(?,?,?)",
                     (name, signature, topic0))
        row = conn.execute("SELECT event_id FROM events WHERE name=?", (name,)).fetchone()
    except sqlite3.Error as e:
        raise PersistenceError(f"event {name!r}: {e}") from e
    return row[0]

def add_method(conn, name: str, signature: str, selector: str) -> int:
    """Find-or-create by signature."""
    try:
        conn.execute("INSERT OR IGNORE INTO methods(name, signature, selector) VALUES(?,?,?)",
                     (name, signature, selector))
        row = conn.execute("SELECT method_id FROM methods WHERE signature=?", (signature,)).fetchone()
    except sqlite3.Error as e:
        raise PersistenceError(f"method {signature!r}: {e}") from e
    return row[0]

def add_contract(conn, contract: ResolvedContract) -> int:
    try:
        with transaction(conn):
            cur = conn.execute("""
                INSERT INTO contracts(address, name, abi, starting_block, created_at)
                VALUES(?,?,?,?,?)
            """, (
                contract.address,
                contract.name,
                json.dumps(contract.abi) if contract.abi is not None else None,
                contract.starting_block,
                int(time.time()),
            ))
            contract_id = cur.lastrowid
            conn.executemany("""
                INSERT INTO contract_events(contract_id, position, event_id) VALUES(?,?,?)
            """, [(contract_id, i, eid) for i, eid in enumerate(contract.event_ids)])
            conn.executemany("""
                INSERT INTO contract_methods(contract_id, position, method_id) VALUES(?,?,?)
            """, [(contract_id, i, mid) for i, mid in enumerate(contract.method_ids)])
            conn.executemany("""
                INSERT INTO states(contract_id, position, variable, slot, byte_offset, size, type, is_base_slot)
                VALUES(?,?,?,?,?,?,?,?)
            """, [
                (contract_id, i, s.variable, s.slot, s.offset, s.size, s.signature, int(s.is_base_slot))
                for i, s in enumerate(contract.slots)
            ])
    except sqlite3.Error as e:
        raise PersistenceError(f"contract {contract.address}: {e}") from e
    return contract_id

# ---------- reads ----------
def load_contracts(conn, contract_ids: Optional[Iterable[int]] = None) -> List[Dict[str, Any]]:
    if contract_ids is None:
        rows = conn.execute("SELECT * FROM contracts ORDER BY contract_id").fetchall()
    else:
        ids = list(contract_ids)
        if not ids:
            return []
        qmarks = ",".join(["?"] * len(ids))
        rows = conn.execute(f"SELECT * FROM contracts WHERE contract_id IN ({qmarks}) ORDER BY contract_id",
                            ids).fetchall()
    out = []
    for r in rows:
        d = row_to_dict(r)
        d["abi"] = json.loads(d["abi"]) if d["abi"] else None
        d["events"] = [e[0] for e in conn.execute(
            "SELECT event_id FROM contract_events WHERE contract_id=? ORDER BY position",
            (d["contract_id"],))]
        d["methods"] = [m[0] for m in conn.execute(
            "SELECT method_id FROM contract_methods WHERE contract_id=? ORDER BY position",
            (d["contract_id"],))]
        out.append(d)
    return out

def load_events(conn) -> List[Dict[str, Any]]:
    rows = conn.execute("SELECT event_id, name, signature, topic0 FROM events ORDER BY event_id").fetchall()
    return [row_to_dict(r) for r in rows]

def load_states(conn, contract_id: int = None) -> List[Dict[str, Any]]:
    q = """
        SELECT contract_id, variable, slot, byte_offset, size, type, is_base_slot
        FROM states {where} ORDER BY contract_id, position
    """
    if contract_id is None:
        rows = conn.execute(q.format(where="")).fetchall()
    else:
        rows = conn.execute(q.format(where="WHERE contract_id=?"), (contract_id,)).fetchall()
    return [dict(row_to_dict(r), is_base_slot=bool(r["is_base_slot"])) for r in rows]

def load_addresses(conn) -> List[str]:
    return [r[0] for r in conn.execute("SELECT address FROM contracts ORDER BY contract_id")]

def load_methods(conn) -> List[Dict[str, Any]]:
    rows = conn.execute("SELECT method_id, name, signature, selector FROM methods ORDER BY method_id").fetchall()
    return [row_to_dict(r) for r in rows]
