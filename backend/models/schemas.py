from decimal import Decimal
from pydantic import BaseModel, Field
from typing import Optional, List


# ── Extracted line item ────────────────────────────────
class ExtractedLineItem(BaseModel):
    """One normalized candidate expense read off a receipt."""
    description: str
    amount: Decimal = Decimal("0.00")
    date: str                       # ISO YYYY-MM-DD
    category: str                   # member of services.categories.CANONICAL_CATEGORIES
    payment_method: str = "Card"


# ── Expense ────────────────────────────────────────────
class CommittedExpense(BaseModel):
    """Row shape submitted to the expense store."""
    description: str
    amount: Decimal
    date: str
    category: str
    payment_method: str = "Card"
    owner_id: str
    receipt_url: Optional[str] = None

class Expense(CommittedExpense):
    id: int
    is_recurring: bool = False
    created_at: str

    class Config:
        from_attributes = True


# ── Receipt extraction record ──────────────────────────
class ReceiptExtraction(BaseModel):
    id: int
    merchant: str
    date: str
    total: Decimal
    receipt_url: Optional[str] = None
    payment_method: str = "Card"
    item_count: int
    created_at: str


# ── Image quality ──────────────────────────────────────
class QualityIssue(BaseModel):
    type: str                       # too_small | dark | low_contrast | blur
    severity: str                   # medium | high
    message: str
    suggestion: str

class ImageQuality(BaseModel):
    """Advisory photo quality check; never blocks a scan."""
    score: int = 70                 # 0-100
    acceptable: bool = True
    issues: List[QualityIssue] = Field(default_factory=list)


# ── Scan ───────────────────────────────────────────────
class ScanStatus(BaseModel):
    fingerprint: str
    state: str                      # idle | scanning | timed_out | errored | complete
    progress: int = 0
    status_message: str = ""

class ScanResponse(ScanStatus):
    items: List[ExtractedLineItem] = Field(default_factory=list)
    main_item: Optional[ExtractedLineItem] = None
    committed: List[CommittedExpense] = Field(default_factory=list)
    basic_info_only: bool = False   # True → only the placeholder item was recorded
    notice: Optional[str] = None
    attempts: int = 0
    source: Optional[str] = None    # name of the strategy that produced the items
    receipt_url: Optional[str] = None
    duplicate: bool = False         # fingerprint was already in flight; nothing ran
    cancelled: bool = False         # scan was cancelled; any result was discarded
    quality: Optional[ImageQuality] = None
