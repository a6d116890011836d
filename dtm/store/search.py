from __future__ import annotations

import sqlite3
import unicodedata
from typing import Any

# Prompt syntax and separators that carry no meaning for search.
_SEPARATORS = str.maketrans(
    {ch: " " for ch in ",|\n\r\t;:()[]{}<>=+*~\"“”‘’/\\"}
)


def process_prompt(prompt: str) -> str:
    """Normalize prompt text into whitespace separated search terms."""
    text = unicodedata.normalize("NFKC", prompt).lower()
    return " ".join(text.translate(_SEPARATORS).split())


def split_search(text: str) -> tuple[list[str], str]:
    """Separate double-quoted phrases from the free text around them."""
    phrases: list[str] = []
    remainder: list[str] = []
    current: list[str] = []
    in_quotes = False
    for ch in text.strip():
        if ch == '"':
            if in_quotes:
                phrases.append("".join(current))
                current.clear()
            in_quotes = not in_quotes
        elif in_quotes:
            current.append(ch)
        else:
            remainder.append(ch)
    return phrases, "".join(remainder)


def fts_query(terms: list[str]) -> str:
    # Each term is quoted so FTS5 treats punctuation inside it as a phrase.
    return " OR ".join('"' + term.replace('"', '""') + '"' for term in terms)


def search_conditions(text: str | None) -> tuple[list[str], list[Any]]:
    """WHERE fragments for a search box string.

    Quoted phrases must all appear in the prompt; the remaining words match
    the full-text index if any of them is present.
    """
    if not text or not text.strip():
        return [], []
    phrases, remainder = split_search(text)
    clauses: list[str] = []
    params: list[Any] = []
    for phrase in phrases:
        if not phrase:
            continue
        clauses.append("images.prompt LIKE ?")
        params.append(f"%{phrase}%")
    terms = process_prompt(remainder).split()
    if terms:
        clauses.append("images.id IN (SELECT rowid FROM images_fts WHERE images_fts MATCH ?)")
        params.append(fts_query(terms))
    return clauses, params


def rebuild_fts(conn: sqlite3.Connection) -> None:
    conn.execute("INSERT INTO images_fts(images_fts) VALUES('rebuild')")
