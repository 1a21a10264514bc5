"""
Spending category taxonomy.

One canonical keyword table is shared by the heuristic receipt parser (first
pass guess) and the normalizer (final mapping), so both agree on where an
item lands.
"""
from typing import Optional

# Closed taxonomy: every committed expense carries one of these names.
CANONICAL_CATEGORIES: list[str] = [
    "Housing",
    "Utilities & Bills",
    "Groceries",
    "Food & Dining",
    "Transportation",
    "Shopping",
    "Health & Fitness",
    "Education",
    "Subscriptions",
    "Entertainment",
    "Personal Care",
    "Travel",
    "Savings & Investments",
    "Donations & Gifts",
    "Other",
]

FALLBACK_CATEGORY = "Other"

# Heuristic line items that match no keyword are assumed to be retail goods.
DEFAULT_ITEM_CATEGORY = "Shopping"

# Older category names still produced by the vision model and by rows written
# before the taxonomy was expanded.
LEGACY_CATEGORY_ALIASES: dict[str, str] = {
    "food": "Food & Dining",
    "rent": "Housing",
    "healthcare": "Health & Fitness",
    "health": "Health & Fitness",
    "utilities": "Utilities & Bills",
    "transport": "Transportation",
    "misc": "Other",
    "miscellaneous": "Other",
    "general": "Other",
}

# keyword → category.  Matched case-insensitively as substrings; when several
# keywords match, the longest (most specific) wins.
CATEGORY_KEYWORDS: list[tuple[str, str]] = [
    # Groceries
    ("grocery",       "Groceries"),
    ("groceries",     "Groceries"),
    ("supermarket",   "Groceries"),
    ("produce",       "Groceries"),
    ("milk",          "Groceries"),
    ("yogurt",        "Groceries"),
    ("yoghurt",       "Groceries"),
    ("cheese",        "Groceries"),
    ("butter",        "Groceries"),
    ("eggs",          "Groceries"),
    ("bread",         "Groceries"),
    ("flour",         "Groceries"),
    ("rice",          "Groceries"),
    ("wheat",         "Groceries"),
    ("vegetable",     "Groceries"),
    ("fruit",         "Groceries"),
    ("banana",        "Groceries"),
    ("apple",         "Groceries"),
    ("chicken",       "Groceries"),
    ("beef",          "Groceries"),
    ("mutton",        "Groceries"),
    ("fish",          "Groceries"),
    ("meat",          "Groceries"),
    ("cereal",        "Groceries"),
    ("biscuit",       "Groceries"),
    ("cookie",        "Groceries"),
    # Food & Dining
    ("food",          "Food & Dining"),
    ("restaurant",    "Food & Dining"),
    ("cafe",          "Food & Dining"),
    ("coffee",        "Food & Dining"),
    ("tea",           "Food & Dining"),
    ("lunch",         "Food & Dining"),
    ("dinner",        "Food & Dining"),
    ("breakfast",     "Food & Dining"),
    ("meal",          "Food & Dining"),
    ("burger",        "Food & Dining"),
    ("pizza",         "Food & Dining"),
    ("sandwich",      "Food & Dining"),
    ("wrap",          "Food & Dining"),
    ("biryani",       "Food & Dining"),
    ("karahi",        "Food & Dining"),
    ("tikka",         "Food & Dining"),
    ("kebab",         "Food & Dining"),
    ("takeout",       "Food & Dining"),
    ("dining",        "Food & Dining"),
    ("juice",         "Food & Dining"),
    ("drink",         "Food & Dining"),
    ("soda",          "Food & Dining"),
    ("cola",          "Food & Dining"),
    ("pepsi",         "Food & Dining"),
    ("sprite",        "Food & Dining"),
    # Transportation
    ("transportation", "Transportation"),
    ("fuel",          "Transportation"),
    ("petrol",        "Transportation"),
    ("diesel",        "Transportation"),
    ("gasoline",      "Transportation"),
    ("gas station",   "Transportation"),
    ("taxi",          "Transportation"),
    ("uber",          "Transportation"),
    ("rickshaw",      "Transportation"),
    ("metro",         "Transportation"),
    ("bus fare",      "Transportation"),
    ("train",         "Transportation"),
    ("parking",       "Transportation"),
    ("toll",          "Transportation"),
    ("fare",          "Transportation"),
    # Utilities & Bills
    ("utilit",        "Utilities & Bills"),
    ("electricity",   "Utilities & Bills"),
    ("water bill",    "Utilities & Bills"),
    ("water service", "Utilities & Bills"),
    ("internet",      "Utilities & Bills"),
    ("wifi",          "Utilities & Bills"),
    ("phone bill",    "Utilities & Bills"),
    ("bill",          "Utilities & Bills"),
    # Housing
    ("housing",       "Housing"),
    ("rent",          "Housing"),
    ("mortgage",      "Housing"),
    ("property",      "Housing"),
    ("plumbing",      "Housing"),
    # Shopping
    ("shopping",      "Shopping"),
    ("clothes",       "Shopping"),
    ("clothing",      "Shopping"),
    ("shirt",         "Shopping"),
    ("trouser",       "Shopping"),
    ("dress",         "Shopping"),
    ("jacket",        "Shopping"),
    ("shoes",         "Shopping"),
    ("fabric",        "Shopping"),
    ("cable",         "Shopping"),
    ("charger",       "Shopping"),
    ("usb",           "Shopping"),
    ("adapter",       "Shopping"),
    ("battery",       "Shopping"),
    ("electronic",    "Shopping"),
    ("detergent",     "Shopping"),
    ("cleaner",       "Shopping"),
    ("tissue",        "Shopping"),
    ("household",     "Shopping"),
    # Health & Fitness
    ("fitness",       "Health & Fitness"),
    ("doctor",        "Health & Fitness"),
    ("medicine",      "Health & Fitness"),
    ("pharmacy",      "Health & Fitness"),
    ("hospital",      "Health & Fitness"),
    ("clinic",        "Health & Fitness"),
    ("dentist",       "Health & Fitness"),
    ("vitamin",       "Health & Fitness"),
    ("gym",           "Health & Fitness"),
    # Personal Care
    ("personal care", "Personal Care"),
    ("toothpaste",    "Personal Care"),
    ("toothbrush",    "Personal Care"),
    ("shampoo",       "Personal Care"),
    ("soap",          "Personal Care"),
    ("handwash",      "Personal Care"),
    ("sanitizer",     "Personal Care"),
    ("lotion",        "Personal Care"),
    ("salon",         "Personal Care"),
    ("grooming",      "Personal Care"),
    ("beauty",        "Personal Care"),
    ("cosmetic",      "Personal Care"),
    # Entertainment
    ("entertainment", "Entertainment"),
    ("movie",         "Entertainment"),
    ("cinema",        "Entertainment"),
    ("concert",       "Entertainment"),
    ("ticket",        "Entertainment"),
    ("game",          "Entertainment"),
    # Subscriptions
    ("subscription",  "Subscriptions"),
    ("netflix",       "Subscriptions"),
    ("spotify",       "Subscriptions"),
    ("streaming",     "Subscriptions"),
    # Education
    ("education",     "Education"),
    ("tuition",       "Education"),
    ("course",        "Education"),
    ("textbook",      "Education"),
    ("school",        "Education"),
    # Travel
    ("travel",        "Travel"),
    ("flight",        "Travel"),
    ("airline",       "Travel"),
    ("hotel",         "Travel"),
    ("airbnb",        "Travel"),
    # Savings & Investments
    ("saving",        "Savings & Investments"),
    ("investment",    "Savings & Investments"),
    ("stocks",        "Savings & Investments"),
    # Donations & Gifts
    ("donation",      "Donations & Gifts"),
    ("charity",       "Donations & Gifts"),
    ("gift",          "Donations & Gifts"),
]


def match_keyword_category(text: str) -> Optional[str]:
    """Return the category of the longest keyword found in ``text``, or None."""
    if not text:
        return None
    lower = text.lower()
    best_keyword = ""
    best_category = None
    for keyword, category in CATEGORY_KEYWORDS:
        if keyword in lower and len(keyword) > len(best_keyword):
            best_keyword = keyword
            best_category = category
    return best_category


def guess_category_from_item_name(name: str) -> str:
    """First-pass category for a heuristically parsed line item."""
    return match_keyword_category(name) or DEFAULT_ITEM_CATEGORY
