"""
Knowledge lookup: ranks a tenant's snippets by keyword overlap with the query.
"""
import re
from typing import List

from sqlalchemy.orm import Session

from .models import KnowledgeSnippet

WORD_RE = re.compile(r"[a-z0-9]+")
STOPWORDS = {
    "a", "an", "and", "are", "at", "be", "can", "do", "for", "how", "i", "in", "is", "it",
    "me", "my", "of", "on", "or", "the", "to", "what", "where", "when", "with", "you", "your",
}


def _keywords(text: str) -> set:
    return {w for w in WORD_RE.findall((text or "").lower()) if w not in STOPWORDS and len(w) > 1}


class KnowledgeLookup:

    def __init__(self, db: Session, max_candidates: int = 200):
        self.db = db
        self.max_candidates = max_candidates

    def search(self, tenant_id: str, query: str, limit: int = 3) -> List[str]:
        query_words = _keywords(query)
        if not query_words:
            return []

        candidates = (
            self.db.query(KnowledgeSnippet)
            .filter(KnowledgeSnippet.tenant_id == tenant_id)
            .order_by(KnowledgeSnippet.id)
            .limit(self.max_candidates)
            .all()
        )

        scored = []
        for snippet in candidates:
            title_words = _keywords(snippet.title)
            body_words = _keywords(snippet.content)
            score = 2 * len(query_words & title_words) + len(query_words & body_words)
            if score:
                scored.append((score, snippet.id, snippet))

        scored.sort(key=lambda item: (-item[0], item[1]))
        return [f"{s.title}\n{s.content}" for _, _, s in scored[:limit]]
