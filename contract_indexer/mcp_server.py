# mcp_server.py
from typing import List, Optional

from fastmcp import FastMCP
from pydantic import BaseModel, Field

from . import config
from .db import db, ensure_schema, load_addresses, load_contracts, load_events, load_methods, load_states
from .onboarding import add_contracts

conn = db()
ensure_schema(conn)
mcp = FastMCP("contract-indexer-mcp")

# ---------- Typed input models ----------
class AddContractsIn(BaseModel):
    addresses: List[str] = Field(..., min_length=1, max_length=100)
    api_key: Optional[str] = None

class ContractsIn(BaseModel):
    contract_ids: Optional[List[int]] = None

class StatesIn(BaseModel):
    contract_id: Optional[int] = None

# ---------- Tools ----------
@mcp.tool(name="contracts_add")
async def contracts_add_t(args: AddContractsIn) -> dict:
    """Onboard addresses; returns {success: [...], fail: [{address, reason}]}. Backfill runs in the background."""
    result = await add_contracts(args.api_key or config.ETHERSCAN_API_KEY, args.addresses, conn=conn)
    return result.to_dict()

@mcp.tool(name="contracts_list")
def contracts_list_t(args: ContractsIn) -> list:
    """Onboarded contracts (all, or by id) with their event and method ids."""
    return load_contracts(conn, args.contract_ids)

@mcp.tool(name="contracts_addresses")
def contracts_addresses_t() -> list:
    """Addresses of all onboarded contracts."""
    return load_addresses(conn)

@mcp.tool(name="events_list")
def events_list_t() -> list:
    """Event registry: id, name, signature, topic0."""
    return load_events(conn)

@mcp.tool(name="methods_list")
def methods_list_t() -> list:
    """Method registry: id, name, signature, 4-byte selector."""
    return load_methods(conn)

@mcp.tool(name="states_list")
def states_list_t(args: StatesIn) -> list:
    """Resolved storage slots, optionally for one contract."""
    return load_states(conn, args.contract_id)


def run():
    mcp.run(transport="http", host="0.0.0.0", port=8000)


if __name__ == "__main__":
    run()
