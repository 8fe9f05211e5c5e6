"""
SEQUENCE CODE GENERATOR

Provides:
1. Atomic per-entity counters (findOneAndUpdate with $inc)
2. Template rendering for <seq>, <yyyy> and <mm> tokens
3. Reserve-and-format in one atomic step
4. Collision retry against the target collection
"""

from motor.motor_asyncio import AsyncIOMotorDatabase
from pymongo import ReturnDocument
from datetime import datetime, date
from typing import Optional, Union, Tuple, List, Dict, Any
import logging
import asyncio

from .store import store_guard

logger = logging.getLogger(__name__)

COUNTERS_COLLECTION = "counters"

SEQ_TOKEN = "<seq>"
YEAR_TOKEN = "<yyyy>"
MONTH_TOKEN = "<mm>"

DEFAULT_COUNTERS = [
    {"name": "roles", "template": "ROLE/<seq>", "seq": 1, "seq_pad": 1},
    {"name": "owners", "template": "OWNER/<seq>", "seq": 0, "seq_pad": 3},
    {"name": "banks", "template": "BANK/<seq>", "seq": 0, "seq_pad": 3},
    {"name": "brokers", "template": "BROKER/<seq>", "seq": 0, "seq_pad": 3},
    {"name": "issuers", "template": "ISSUER/<seq>", "seq": 0, "seq_pad": 3},
    {"name": "users", "template": "USER/<seq>", "seq": 0, "seq_pad": 3},
    {"name": "stocks", "template": "STOCK/<seq>/<yyyy><mm>", "seq": 0, "seq_pad": 5},
    {"name": "payment_stocks", "template": "STOCK-P/<seq>/<yyyy><mm>", "seq": 0, "seq_pad": 5},
    {"name": "dividend_stocks", "template": "STOCK-D/<seq>/<yyyy><mm>", "seq": 0, "seq_pad": 5},
    {"name": "savings", "template": "SAV/<seq>/<yyyy><mm>", "seq": 0, "seq_pad": 5},
    {"name": "deposits", "template": "DEPO/<seq>/<yyyy><mm>", "seq": 0, "seq_pad": 5},
    {"name": "bonds", "template": "BOND/<seq>/<yyyy><mm>", "seq": 0, "seq_pad": 5},
    {"name": "insurances", "template": "INS/<seq>/<yyyy><mm>", "seq": 0, "seq_pad": 5},
]

DEFAULT_SEQ_PAD = 1

ReferenceDate = Union[str, date, datetime]


class NotFoundError(Exception):
    """Raised when no counter has been seeded for the requested name"""
    def __init__(self, name: str):
        self.name = name
        super().__init__(f"Counter not found: {name}")


class ConcurrencyExhaustedError(Exception):
    """Raised when a unique code could not be reserved within the retry bound"""
    pass


def parse_reference_date(reference_date: ReferenceDate) -> date:
    if isinstance(reference_date, datetime):
        return reference_date.date()
    if isinstance(reference_date, date):
        return reference_date
    value = reference_date.strip()
    if value.endswith("Z"):
        value = value[:-1] + "+00:00"
    return datetime.fromisoformat(value).date()


def format_code(
    template: str,
    seq: int,
    reference_date: Optional[ReferenceDate] = None,
    seq_pad: int = DEFAULT_SEQ_PAD
) -> str:
    """
    Render a counter snapshot into its human-facing code.

    <seq> becomes seq + 1 zero-padded to seq_pad digits, <yyyy> and <mm>
    come from reference_date. Tokens absent from the template are never
    evaluated, so reference_date may be None for templates without dates.

    >>> format_code("STOCK/<seq>/<yyyy><mm>", 0, "2024-03-15", 5)
    'STOCK/00001/202403'
    """
    result = template

    if SEQ_TOKEN in result:
        result = result.replace(SEQ_TOKEN, str(seq + 1).zfill(seq_pad))

    if YEAR_TOKEN in result or MONTH_TOKEN in result:
        if reference_date is None:
            raise ValueError(f"Template '{template}' requires a reference date")
        parsed = parse_reference_date(reference_date)
        result = result.replace(YEAR_TOKEN, f"{parsed.year:04d}")
        result = result.replace(MONTH_TOKEN, f"{parsed.month:02d}")

    return result


class CodeGeneratorService:
    """
    Sequence code generator backed by the counters collection.

    Counters are seeded at deploy time and are never auto-created here:
    incrementing an unknown name raises NotFoundError. Counter values are
    never cached in-process.
    """

    MAX_RETRIES = 5
    RETRY_DELAY_MS = 20

    def __init__(self, db: AsyncIOMotorDatabase):
        self.db = db
        self.collection = db[COUNTERS_COLLECTION]

    format = staticmethod(format_code)

    async def increment(self, name: str, by: int = 1, session=None) -> None:
        """Atomically add `by` to the counter identified by `name`."""
        async with store_guard("counters.increment"):
            result = await self.collection.find_one_and_update(
                {"name": name},
                {
                    "$inc": {"seq": by},
                    "$set": {"updated_at": datetime.utcnow()}
                },
                return_document=ReturnDocument.AFTER,
                session=session
            )

        if result is None:
            raise NotFoundError(name)

        logger.debug(f"[COUNTER] {name} incremented by {by} to {result['seq']}")

    async def reserve(
        self,
        name: str,
        reference_date: Optional[ReferenceDate] = None,
        session=None,
        collection: Optional[str] = None,
        field: Optional[str] = None
    ) -> Tuple[str, int]:
        """
        Reserve the next ordinal and render it in one atomic step.

        Returns:
            tuple: (code, seq) where seq is the counter value after the
            increment, i.e. the ordinal rendered into the code.

        Raises:
            NotFoundError: counter was never seeded
            ConcurrencyExhaustedError: every reserved code collided with an
                existing record in `collection`
        """
        for attempt in range(self.MAX_RETRIES):
            async with store_guard("counters.reserve"):
                counter = await self.collection.find_one_and_update(
                    {"name": name},
                    {
                        "$inc": {"seq": 1},
                        "$set": {"updated_at": datetime.utcnow()}
                    },
                    return_document=ReturnDocument.AFTER,
                    session=session
                )

            if counter is None:
                raise NotFoundError(name)

            seq = counter["seq"]
            code = format_code(
                counter["template"],
                seq - 1,
                reference_date,
                counter.get("seq_pad", DEFAULT_SEQ_PAD)
            )

            if collection and field:
                async with store_guard("counters.collision_check"):
                    existing = await self.db[collection].find_one(
                        {field: code},
                        session=session
                    )
                if existing:
                    logger.warning(f"[COUNTER] Code collision: {code}, retry {attempt + 1}")
                    await asyncio.sleep(self.RETRY_DELAY_MS * (attempt + 1) / 1000)
                    continue

            logger.info(f"[COUNTER] Reserved {code} for {name}")
            return code, seq

        raise ConcurrencyExhaustedError(
            f"Failed to reserve a unique code for '{name}' after {self.MAX_RETRIES} attempts"
        )

    async def preview(self, name: str, reference_date: Optional[ReferenceDate] = None) -> str:
        """Render the next code without reserving it"""
        counter = await self.retrieve(name)
        return format_code(
            counter["template"],
            counter["seq"],
            reference_date,
            counter.get("seq_pad", DEFAULT_SEQ_PAD)
        )

    async def retrieve(self, name: str, session=None) -> Dict[str, Any]:
        async with store_guard("counters.retrieve"):
            counter = await self.collection.find_one({"name": name}, session=session)
        if counter is None:
            raise NotFoundError(name)
        return counter

    async def retrieve_all(self) -> List[Dict[str, Any]]:
        async with store_guard("counters.retrieve_all"):
            cursor = self.collection.find({}).sort("name", 1)
            return await cursor.to_list(length=None)

    async def seed_defaults(self, session=None) -> List[str]:
        """
        Insert default counters that do not exist yet.

        Existing counters keep their current seq.
        Returns the names that were inserted.
        """
        inserted = []
        for counter in DEFAULT_COUNTERS:
            existing = await self.collection.find_one({"name": counter["name"]}, session=session)
            if existing:
                continue
            await self.collection.insert_one(
                {**counter, "created_at": datetime.utcnow()},
                session=session
            )
            inserted.append(counter["name"])

        if inserted:
            logger.info(f"[COUNTER] Seeded counters: {', '.join(inserted)}")
        return inserted

    async def create_indexes(self):
        await self.collection.create_index(
            [("name", 1)],
            unique=True,
            name="unique_counter_name"
        )
        logger.info("[COUNTER] Created unique counter name index")
