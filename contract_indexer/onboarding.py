# onboarding.py
"""
Onboarding orchestrator.

Each address goes Fetching -> Parsing -> Resolving -> Persisting and ends up
Accepted or Rejected. Addresses are processed one after another; a failure
at any stage rejects that address only and the batch moves on. Once every
address is done, the backfill worker is launched once with all newly created
contract ids (and not awaited).
"""
import asyncio
import functools
import logging
from dataclasses import dataclass, field
from typing import Awaitable, Callable, Dict, Iterable, List, Optional, Union

from . import db as store
from .backfill import BackfillDispatcher
from .errors import ContractIndexerError, NotFound
from .events import resolve_event_ids, resolve_method_ids
from .explorer import ContractMetadata, EtherscanClient
from .helpers import to_addr
from .layout import resolve_layout
from .source_parser import parse_contract

logger = logging.getLogger(__name__)

FETCHING, PARSING, RESOLVING, PERSISTING = "fetching", "parsing", "resolving", "persisting"

MetadataSource = Callable[[str], Awaitable[ContractMetadata]]


@dataclass(frozen=True)
class Accepted:
    address: str
    contract_id: int


@dataclass(frozen=True)
class Rejected:
    address: str
    stage: str
    reason: str
    retryable: bool = False


Outcome = Union[Accepted, Rejected]


@dataclass
class OnboardingResult:
    outcomes: List[Outcome] = field(default_factory=list)
    backfill: Optional[asyncio.Task] = None

    @property
    def accepted(self) -> List[Accepted]:
        return [o for o in self.outcomes if isinstance(o, Accepted)]

    @property
    def rejected(self) -> List[Rejected]:
        return [o for o in self.outcomes if isinstance(o, Rejected)]

    @property
    def contract_ids(self) -> List[int]:
        return [o.contract_id for o in self.accepted]

    @property
    def success(self) -> List[str]:
        return [o.address for o in self.accepted]

    @property
    def fail(self) -> List[str]:
        return [o.address for o in self.rejected]

    def to_dict(self) -> Dict[str, list]:
        return {
            "success": self.success,
            "fail": [{"address": o.address, "reason": f"{o.stage}: {o.reason}"} for o in self.rejected],
        }


class Onboarder:
    def __init__(self, conn, source: MetadataSource, dispatcher: Optional[BackfillDispatcher] = None):
        self.conn = conn
        self.source = source
        self.dispatcher = dispatcher
        self.registry = functools.partial(store.add_event, conn)
        self.method_registry = functools.partial(store.add_method, conn)

    async def onboard(self, address: str) -> Outcome:
        stage = FETCHING
        try:
            try:
                addr = to_addr(address)
            except ValueError as e:
                raise NotFound(str(e)) from None
            meta = await self.source(addr)

            stage = PARSING
            parsed = parse_contract(meta.source_code, meta.name)

            stage = RESOLVING
            slots = resolve_layout(parsed.declarations, parsed.catalog)

            # registry rows and the contract row commit together or not at all
            stage = PERSISTING
            with store.transaction(self.conn):
                event_ids = resolve_event_ids(meta.abi, self.registry)
                method_ids = resolve_method_ids(meta.abi, self.method_registry)
                contract_id = store.add_contract(self.conn, store.ResolvedContract(
                    address=addr,
                    name=meta.name or parsed.contract_name,
                    abi=meta.abi,
                    slots=tuple(slots),
                    event_ids=tuple(event_ids),
                    starting_block=meta.starting_block,
                    method_ids=tuple(method_ids),
                ))
        except ContractIndexerError as e:
            logger.warning("[onboard] %s rejected while %s: %s", address, stage, e)
            return Rejected(address, stage, str(e), retryable=getattr(e, "retryable", False))
        except Exception as e:
            logger.exception("[onboard] %s rejected while %s", address, stage)
            return Rejected(address, stage, f"{type(e).__name__}: {e}")

        logger.info("[onboard] %s accepted as contract %d (%d slots, %d events)",
                    addr, contract_id, len(slots), len(event_ids))
        return Accepted(address, contract_id)

    async def add_contracts(self, addresses: Iterable[str]) -> OnboardingResult:
        result = OnboardingResult()
        for address in addresses:
            result.outcomes.append(await self.onboard(address))

        ids = result.contract_ids
        logger.info("[onboard] batch done: %d accepted, %d rejected", len(ids), len(result.rejected))
        if ids and self.dispatcher is not None:
            result.backfill = self.dispatcher.dispatch(ids)
        return result


async def add_contracts(api_key: str, addresses: Iterable[str], conn=None,
                        dispatcher: Optional[BackfillDispatcher] = None,
                        backfill: bool = True) -> OnboardingResult:
    """Batch entrypoint: explorer-backed onboarding into the sqlite store."""
    if conn is None:
        conn = store.db()
        store.ensure_schema(conn)
    if dispatcher is None and backfill:
        dispatcher = BackfillDispatcher()
    async with EtherscanClient(api_key) as client:
        return await Onboarder(conn, client.fetch_contract, dispatcher).add_contracts(addresses)
