"""PostgreSQL dialect."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any

from querykit.dialects.base import AnsiGrammar, Dialect, Grammar, Params, Translator


class PostgresGrammar(AnsiGrammar):
    def placeholder(self, index: int) -> str:
        return f"${index}"


class PostgresTranslator(Translator):
    # backslash is already the default LIKE escape character
    like_escape_clause = ""

    def _ilike(self, column: str, pattern: str, params: Params) -> str:
        return f"{column} ILIKE {params.add(pattern)}"

    def op_iexact(self, column: str, value: Any, params: Params) -> str:
        return self._ilike(column, self.grammar.like_escape(str(value)), params)

    def op_icontains(self, column: str, value: Any, params: Params) -> str:
        return self._ilike(column, f"%{self.grammar.like_escape(str(value))}%", params)

    def op_istartswith(self, column: str, value: Any, params: Params) -> str:
        return self._ilike(column, f"{self.grammar.like_escape(str(value))}%", params)

    def op_iendswith(self, column: str, value: Any, params: Params) -> str:
        return self._ilike(column, f"%{self.grammar.like_escape(str(value))}", params)

    def op_regex(self, column: str, value: Any, params: Params) -> str:
        return f"{column} ~ {params.add(value)}"

    def op_iregex(self, column: str, value: Any, params: Params) -> str:
        return f"{column} ~* {params.add(value)}"


@dataclass
class PostgresDialect(Dialect):
    name: str = "postgresql"
    grammar_class: type[Grammar] = PostgresGrammar
    translator_class: type[Translator] = PostgresTranslator
