"""Tests for the sequence code generator."""

import asyncio
from datetime import date, datetime

import pytest
from pymongo.errors import ServerSelectionTimeoutError

from core.code_generator import (
    CodeGeneratorService,
    ConcurrencyExhaustedError,
    NotFoundError,
    format_code,
)
from core.store import StoreUnavailableError


def _seq(fake_db, name):
    return next(doc["seq"] for doc in fake_db.counters.documents if doc["name"] == name)


class TestFormatCode:
    def test_renders_sequence_year_and_month(self):
        assert format_code("STOCK/<seq>/<yyyy><mm>", 0, "2024-03-15", 5) == "STOCK/00001/202403"

    def test_renders_next_ordinal_without_dates(self):
        assert format_code("ROLE/<seq>", 1, "1999-12-31", 1) == "ROLE/2"

    def test_date_is_not_needed_without_date_tokens(self):
        assert format_code("BANK/<seq>", 41, None, 3) == "BANK/042"

    def test_replaces_every_occurrence(self):
        assert format_code("<seq>-<seq>/<mm>/<mm>", 8, "2023-11-01", 2) == "09-09/11/11"

    def test_unknown_tokens_are_left_untouched(self):
        assert format_code("X/<seq>/<dd>/<yy>", 0, "2024-01-05", 1) == "X/1/<dd>/<yy>"

    def test_pad_never_truncates(self):
        assert format_code("S/<seq>", 99999, "2024-01-01", 3) == "S/100000"

    def test_accepts_dates_datetimes_and_timestamps(self):
        assert format_code("<yyyy><mm>", 0, date(2025, 7, 4), 1) == "202507"
        assert format_code("<yyyy><mm>", 0, datetime(2025, 1, 31, 23, 59), 1) == "202501"
        assert format_code("<yyyy><mm>", 0, "2025-02-10T08:30:00Z", 1) == "202502"

    def test_date_template_without_date_raises(self):
        with pytest.raises(ValueError):
            format_code("DEPO/<seq>/<yyyy>", 0, None, 5)

    def test_is_exposed_on_the_service(self):
        assert CodeGeneratorService.format("ROLE/<seq>", 1, None, 1) == "ROLE/2"


class TestIncrement:
    @pytest.mark.asyncio
    async def test_increment_adds_to_seq(self, fake_db):
        service = CodeGeneratorService(fake_db)

        await service.increment("bonds")
        await service.increment("bonds", 4)

        assert _seq(fake_db, "bonds") == 5

    @pytest.mark.asyncio
    async def test_increment_unknown_counter_raises(self, fake_db):
        service = CodeGeneratorService(fake_db)

        with pytest.raises(NotFoundError):
            await service.increment("unknown")

        assert await fake_db.counters.find_one({"name": "unknown"}) is None

    @pytest.mark.asyncio
    async def test_concurrent_increments_lose_no_update(self, fake_db):
        service = CodeGeneratorService(fake_db)

        await asyncio.gather(*[service.increment("stocks") for _ in range(25)])

        assert _seq(fake_db, "stocks") == 25

    @pytest.mark.asyncio
    async def test_store_connection_failure_surfaces(self, fake_db):
        fake_db.counters.fail_with = ServerSelectionTimeoutError("no primary")
        service = CodeGeneratorService(fake_db)

        with pytest.raises(StoreUnavailableError) as exc_info:
            await service.increment("bonds")

        assert exc_info.value.operation == "counters.increment"


class TestReserve:
    @pytest.mark.asyncio
    async def test_reserve_formats_the_reserved_ordinal(self, fake_db):
        service = CodeGeneratorService(fake_db)

        code, seq = await service.reserve("deposits", "2024-03-15")

        assert (code, seq) == ("DEPO/00001/202403", 1)
        assert _seq(fake_db, "deposits") == 1

    @pytest.mark.asyncio
    async def test_roles_start_after_the_seeded_admin_role(self, fake_db):
        service = CodeGeneratorService(fake_db)

        code, _ = await service.reserve("roles")

        assert code == "ROLE/2"

    @pytest.mark.asyncio
    async def test_concurrent_reservations_are_distinct(self, fake_db):
        service = CodeGeneratorService(fake_db)

        results = await asyncio.gather(*[service.reserve("savings", "2024-06-01") for _ in range(20)])

        codes = [code for code, _ in results]
        assert len(set(codes)) == 20
        assert sorted(seq for _, seq in results) == list(range(1, 21))
        assert _seq(fake_db, "savings") == 20

    @pytest.mark.asyncio
    async def test_reserve_skips_codes_already_taken(self, fake_db, monkeypatch):
        monkeypatch.setattr(CodeGeneratorService, "RETRY_DELAY_MS", 0)
        fake_db.banks.documents.append({"code": "BANK/001", "name": "Legacy"})
        service = CodeGeneratorService(fake_db)

        code, seq = await service.reserve("banks", collection="banks", field="code")

        assert (code, seq) == ("BANK/002", 2)

    @pytest.mark.asyncio
    async def test_reserve_gives_up_after_bounded_collisions(self, fake_db, monkeypatch):
        monkeypatch.setattr(CodeGeneratorService, "RETRY_DELAY_MS", 0)
        fake_db.owners.documents.extend({"code": f"OWNER/{n:03d}"} for n in range(1, 10))
        service = CodeGeneratorService(fake_db)

        with pytest.raises(ConcurrencyExhaustedError):
            await service.reserve("owners", collection="owners", field="code")

        assert _seq(fake_db, "owners") == CodeGeneratorService.MAX_RETRIES

    @pytest.mark.asyncio
    async def test_reserve_unknown_counter_raises(self, fake_db):
        with pytest.raises(NotFoundError):
            await CodeGeneratorService(fake_db).reserve("unknown")


class TestPreviewAndSeed:
    @pytest.mark.asyncio
    async def test_preview_does_not_advance_counter(self, fake_db):
        service = CodeGeneratorService(fake_db)

        first = await service.preview("bonds", "2024-12-01")
        second = await service.preview("bonds", "2024-12-01")

        assert first == second == "BOND/00001/202412"
        assert _seq(fake_db, "bonds") == 0

    @pytest.mark.asyncio
    async def test_seed_defaults_keeps_existing_counters(self, fake_db):
        fake_db.counters.documents = [
            doc for doc in fake_db.counters.documents if doc["name"] != "insurances"
        ]
        next(doc for doc in fake_db.counters.documents if doc["name"] == "bonds")["seq"] = 17
        service = CodeGeneratorService(fake_db)

        inserted = await service.seed_defaults()

        assert inserted == ["insurances"]
        assert _seq(fake_db, "bonds") == 17
        assert await service.seed_defaults() == []

    @pytest.mark.asyncio
    async def test_retrieve_all_is_sorted_by_name(self, fake_db):
        counters = await CodeGeneratorService(fake_db).retrieve_all()

        names = [counter["name"] for counter in counters]
        assert names == sorted(names)
        assert len(names) == 13
