"""
Expenses Router

GET /api/expenses  the caller's committed expenses, newest first
"""
import logging
from typing import Optional

import aiosqlite
from fastapi import APIRouter, Depends, HTTPException

from db.database import get_db
from models.schemas import Expense
from routers.receipts import get_owner_id
from services.commit_service import ExpenseStore

logger = logging.getLogger("pocketbook.expenses")
router = APIRouter()


@router.get("", response_model=list[Expense])
async def list_expenses(
    limit: int = 50,
    offset: int = 0,
    owner_id: Optional[str] = Depends(get_owner_id),
    db: aiosqlite.Connection = Depends(get_db),
):
    if not owner_id:
        raise HTTPException(status_code=401, detail="You must be signed in to view expenses")
    expenses = await ExpenseStore(db).list_expenses(owner_id, limit, offset)
    logger.debug("list_expenses returning %d expense(s) for %s", len(expenses), owner_id)
    return expenses
