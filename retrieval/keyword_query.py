from __future__ import annotations

import re


def build_keyword_terms(q: str, *, max_terms: int = 3) -> list[str]:
    """Pick a few distinctive words from free text for the LIKE fallback search."""
    text = (q or "").strip()
    if not text:
        return []

    # Treat hyphens and slashes as word separators.
    text = re.sub(r"[-/]+", " ", text)

    words = [w for w in re.findall(r"[A-Za-z0-9_']+", text.lower()) if len(w) > 3]
    seen: set[str] = set()
    terms: list[str] = []
    for w in words:
        if w in seen:
            continue
        seen.add(w)
        terms.append(w)
        if len(terms) >= max_terms:
            break
    return terms
