"""
Pattern categorisation.

A cluster's category is the first rule in a prioritised list whose signal
appears in at least ``min_fraction`` of the member chunks; clusters no rule
claims are ``utility``.  Users extend the list through ``category_rules`` in
the config file; their rules are evaluated before the built-in ones::

    category_rules:
      - id: orm-session
        category: database
        patterns: ["\\bdb\\.session\\b"]
      - id: feature-flags
        category: configuration
        patterns: ["\\bflags\\.is_enabled\\("]
        min_fraction: 0.3
"""

from __future__ import annotations

import logging
import re
from collections import Counter
from dataclasses import dataclass
from typing import Iterable, Optional

from ..index.embedder import tokenize
from ..index.models import ChunkKind
from .models import Category

logger = logging.getLogger(__name__)

_I = re.IGNORECASE

# Raw SQL statements (shared with the enforcer's heuristics)
SQL_STATEMENT = re.compile(
    r"\bSELECT\b[\s\S]{1,400}?\bFROM\b"
    r"|\bINSERT\s+INTO\b"
    r"|\bUPDATE\s+[\w.\"`\[\]]+\s+SET\b"
    r"|\bDELETE\s+FROM\b"
    r"|\bCREATE\s+TABLE\b",
    _I,
)

DB_DRIVER = re.compile(
    r"\b(sqlite3|psycopg2?|pymysql|mysql\.connector|cx_Oracle|pyodbc)\b"
    r"|\.cursor\s*\(|\.execute(many)?\s*\(",
)

HTTP_ROUTE = re.compile(
    r"@\w+\.(get|post|put|patch|delete|route)\s*\(\s*['\"]/"
    r"|\b(app|router|server)\.(get|post|put|patch|delete)\s*\(\s*['\"]/"
    r"|@(Get|Post|Put|Patch|Delete|Request)Mapping\b"
    r"|\bHttp(Get|Post|Put|Delete)\b",
)

HTTP_CLIENT = re.compile(
    r"\brequests\.(get|post|put|patch|delete|request)\s*\("
    r"|\burllib\.request\b|\bhttp\.client\b|\bhttpx\.\w+\s*\("
    r"|\bfetch\s*\(\s*['\"`]|\baxios\.\w+\s*\(",
)

CRYPTO_AUTH = re.compile(
    r"\b(hashlib|hmac|bcrypt|argon2|scrypt|pbkdf2\w*|jwt|oauth2?|cipher|Crypto)\b"
    r"|\b(encrypt|decrypt|authenticate|authorize|verify_password|hash_password)\w*\b",
    _I,
)

CRYPTO_PRIMITIVE = re.compile(
    r"\bhashlib\.\w+\s*\(|\bhmac\.new\s*\(|\bjwt\.(encode|decode)\s*\("
    r"|\bbcrypt\.\w+\s*\(|\bCrypto\.Cipher\b|\bcrypto\.createHash\s*\(",
)

CONFIG_ACCESS = re.compile(
    r"\bos\.environ\b|\bos\.getenv\s*\(|\bprocess\.env\b|\bSystem\.getenv\s*\("
    r"|\byaml\.safe_load\s*\(|\bConfigParser\s*\(|\bload_dotenv\s*\(",
)

# Evidence that a candidate implements a category "by hand" instead of
# through an established wrapper.
RAW_SIGNALS: dict[Category, tuple[re.Pattern, ...]] = {
    Category.DATABASE: (SQL_STATEMENT, DB_DRIVER),
    Category.API: (HTTP_CLIENT,),
    Category.SECURITY: (CRYPTO_PRIMITIVE,),
    Category.CONFIGURATION: (CONFIG_ACCESS,),
    Category.UTILITY: (),
}


def exhibits_raw_signal(category: Category, content: str) -> bool:
    """Return True if *content* shows the raw form of *category*."""
    return any(p.search(content) for p in RAW_SIGNALS.get(category, ()))


@dataclass(frozen=True)
class CategoryRule:
    """One entry of the prioritised category rule list."""

    rule_id: str
    category: Category
    patterns: tuple = ()
    kinds: tuple = ()
    min_fraction: float = 0.5

    def matches_member(self, content: str, kind: str) -> bool:
        if kind in self.kinds:
            return True
        return any(p.search(content) for p in self.patterns)

    def matches(self, members: list[tuple[str, str]]) -> bool:
        """True when at least ``min_fraction`` of ``(content, kind)`` members match."""
        if not members:
            return False
        hits = sum(1 for content, kind in members if self.matches_member(content, kind))
        return hits / len(members) >= self.min_fraction

    @classmethod
    def from_dict(cls, data: dict) -> "CategoryRule":
        """
        Build a user rule from its config mapping.

        Raises
        ------
        ValueError
            On an unknown category or an invalid regular expression.
        """
        category = Category(str(data.get("category", "")).lower())
        flags = _I if data.get("ignore_case", True) else 0
        try:
            patterns = tuple(re.compile(p, flags) for p in data.get("patterns", []))
        except re.error as exc:
            raise ValueError(f"invalid pattern in category rule: {exc}") from exc
        kinds = tuple(str(k) for k in data.get("kinds", []))
        if not patterns and not kinds:
            raise ValueError("category rule needs 'patterns' or 'kinds'")
        return cls(
            rule_id=str(data.get("id") or f"user:{category.value}"),
            category=category,
            patterns=patterns,
            kinds=kinds,
            min_fraction=float(data.get("min_fraction", 0.5)),
        )


BUILTIN_RULES: tuple[CategoryRule, ...] = (
    CategoryRule("builtin:security", Category.SECURITY, (CRYPTO_AUTH,)),
    CategoryRule("builtin:database", Category.DATABASE, (SQL_STATEMENT, DB_DRIVER)),
    CategoryRule("builtin:api", Category.API, (HTTP_ROUTE, HTTP_CLIENT)),
    CategoryRule(
        "builtin:configuration", Category.CONFIGURATION, (CONFIG_ACCESS,),
        kinds=(ChunkKind.CONFIG,),
    ),
)

DEFAULT_RULE_ID = "builtin:default"


class CategoryClassifier:
    """First-match-wins evaluation of the category rule list."""

    def __init__(self, user_rules: Iterable[CategoryRule] = ()) -> None:
        self.rules: tuple[CategoryRule, ...] = tuple(user_rules) + BUILTIN_RULES

    @classmethod
    def from_config(cls, config) -> "CategoryClassifier":
        rules = []
        for raw in getattr(config, "CATEGORY_RULES", []) or []:
            try:
                rules.append(CategoryRule.from_dict(raw))
            except (ValueError, TypeError, AttributeError) as exc:
                logger.warning("[patterns] Ignoring invalid category rule %r: %s", raw, exc)
        return cls(rules)

    def classify(self, members: list[tuple[str, str]]) -> tuple[Category, str]:
        """Return ``(category, rule_id)`` for the ``(content, kind)`` members."""
        for rule in self.rules:
            if rule.matches(members):
                return rule.category, rule.rule_id
        return Category.UTILITY, DEFAULT_RULE_ID


_PLACEHOLDER = re.compile(r"<[^>]*>")


def heuristic_name(category: Category, symbols: list[str], fallback: str) -> str:
    """
    Name a pattern from the identifier words its members share,
    e.g. ``database/fetch`` for ``fetch_users``, ``fetch_orders``, …
    """
    counts: Counter = Counter()
    for symbol in symbols:
        leaf = _PLACEHOLDER.sub("", symbol.rsplit(".", 1)[-1])
        counts.update(set(tokenize(leaf)))
    quorum = max(2, (len(symbols) + 1) // 2)
    shared = sorted(
        (word for word, n in counts.items() if n >= quorum and len(word) > 1),
        key=lambda w: (-counts[w], w),
    )
    stem = "_".join(shared[:3]) if shared else fallback
    return f"{category.value}/{stem}"
