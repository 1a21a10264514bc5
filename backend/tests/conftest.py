"""
Shared fixtures for backend tests.

Every test gets a fresh in-memory SQLite database built from the production
schema in db/database.py, plus stub extraction strategies for driving the
scan pipeline without Tesseract or the Anthropic API.
"""
import pytest
import aiosqlite

from db.database import SCHEMA
from services.extraction_service import ExtractionResult


@pytest.fixture
async def db():
    """Yield a fresh in-memory SQLite connection with the full schema."""
    async with aiosqlite.connect(":memory:") as conn:
        conn.row_factory = aiosqlite.Row
        await conn.execute("PRAGMA foreign_keys = ON")
        await conn.executescript(SCHEMA)
        yield conn


class StubStrategy:
    """Returns queued results in order; repeats the last one when the queue runs dry."""

    def __init__(self, name, *results):
        self.name = name
        self.results = list(results)
        self.calls = 0

    async def run(self, request):
        self.calls += 1
        if len(self.results) > 1:
            result = self.results.pop(0)
        else:
            result = self.results[0]
        if isinstance(result, Exception):
            raise result
        return result


async def no_sleep(seconds):
    return None


@pytest.fixture
def milk_result():
    return ExtractionResult.ok(
        [{"description": "Milk", "amount": "3.49", "date": "2024-03-01",
          "category": "Groceries", "payment_method": "Card"}],
        source="vision",
    )
