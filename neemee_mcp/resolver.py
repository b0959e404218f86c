"""Resolve free-form notebook references to notebook identifiers."""

from __future__ import annotations

from typing import Protocol, Sequence

from .logging import get_logger
from .models import Notebook, looks_like_id
from .text import normalize_for_search

LOGGER = get_logger(__name__)


class NotebookLookup(Protocol):
    """Read-only notebook queries the resolver needs from persistence."""

    def find_notebook_by_id(self, tenant_id: str, notebook_id: str) -> Notebook | None: ...

    def find_notebooks_by_text(self, tenant_id: str, text: str) -> Sequence[Notebook]: ...

    def find_all_notebooks(self, tenant_id: str) -> Sequence[Notebook]: ...


def _mutual_substring(left: str, right: str) -> bool:
    return left in right or right in left


class NotebookResolver:
    """Turn an exact id, full name, partial name, or description fragment into ids.

    Rules are tried in order and the first non-empty one wins:

    1. an id-shaped query resolves to just that id when the tenant owns it,
       and to nothing otherwise;
    2. a case-insensitive substring hit on name or description; exact name
       matches, when present, narrow the result to themselves;
    3. a normalized comparison over every tenant notebook, accepting mutual
       substring containment against the name or the description.

    Callers reject empty queries before reaching the resolver.
    """

    def __init__(self, lookup: NotebookLookup) -> None:
        self._lookup = lookup

    def resolve(self, tenant_id: str, query: str) -> set[str]:
        if looks_like_id(query):
            notebook = self._lookup.find_notebook_by_id(tenant_id, query)
            if notebook is not None and notebook.tenant_id == tenant_id:
                LOGGER.debug("resolver.id_hit", extra={"context": {"tenant_id": tenant_id, "notebook_id": notebook.id}})
                return {notebook.id}
            # Ids are never reinterpreted as text.
            return set()

        candidates = [nb for nb in self._lookup.find_notebooks_by_text(tenant_id, query) if nb.tenant_id == tenant_id]
        if candidates:
            folded = query.casefold()
            exact = {nb.id for nb in candidates if nb.name.casefold() == folded}
            if exact:
                return exact
            return {nb.id for nb in candidates}

        return self._fuzzy(tenant_id, query)

    def _fuzzy(self, tenant_id: str, query: str) -> set[str]:
        normalized_query = normalize_for_search(query)
        accepted: set[str] = set()
        for notebook in self._lookup.find_all_notebooks(tenant_id):
            if notebook.tenant_id != tenant_id:
                continue
            name = normalize_for_search(notebook.name)
            # Missing descriptions normalize to "", which every query contains.
            description = normalize_for_search(notebook.description or "")
            if _mutual_substring(normalized_query, name) or _mutual_substring(normalized_query, description):
                accepted.add(notebook.id)
        LOGGER.debug(
            "resolver.fuzzy",
            extra={"context": {"tenant_id": tenant_id, "query": normalized_query, "matches": len(accepted)}},
        )
        return accepted


def resolve_notebook(lookup: NotebookLookup, tenant_id: str, query: str) -> set[str]:
    return NotebookResolver(lookup).resolve(tenant_id, query)
