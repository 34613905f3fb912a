from __future__ import annotations

import re
from typing import List

_TICKER_RE = re.compile(r"\b([A-Z]{1,5})\b")

# Uppercase words that show up in chat far more often as words than as symbols.
_EXCLUDED = frozenset(
    {
        "ATH", "WH", "THE", "AND", "FOR", "ARE", "BUT", "NOT", "YOU", "ALL", "CAN", "HER", "WAS",
        "ONE", "OUR", "OUT", "DAY", "GET", "HAS", "HIM", "HIS", "HOW", "ITS", "MAY", "NEW", "NOW",
        "OLD", "SEE", "TWO", "WAY", "WHO", "BOY", "DID", "DOWN", "EACH", "EVEN", "FROM", "GIVE",
        "GOOD", "HAVE", "HERE", "INTO", "JUST", "KNOW", "LIKE", "LOOK", "MADE", "MAKE", "MAN",
        "MANY", "MORE", "MOST", "MOVE", "MUCH", "MUST", "NEED", "ONLY", "OVER", "OWN", "PUT",
        "RIGHT", "SAID", "SAME", "SAY", "SHE", "SHOW", "SOME", "TAKE", "THAN", "THEM", "THESE",
        "THEY", "THIS", "TIME", "VERY", "WANT", "WATER", "WELL", "WERE", "WHAT", "WHEN", "WHERE",
        "WHICH", "WILL", "WITH", "WORK", "WOULD", "WRITE", "YEAR", "YOUR", "LONG", "SHORT", "BUY",
        "SELL", "BAD", "THINK", "BOUGHT", "BUYING", "TRADING",
    }
)


def detect_tickers(text: str | None) -> List[str]:
    """Uppercase 1-5 letter words that are not common words, first-seen order."""
    seen: List[str] = []
    for match in _TICKER_RE.finditer(text or ""):
        token = match.group(1)
        if token in _EXCLUDED or token in seen:
            continue
        seen.append(token)
    return seen
