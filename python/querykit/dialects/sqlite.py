"""SQLite dialect."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any

from querykit.dialects.base import AnsiGrammar, Dialect, Grammar, Params, Translator

_GLOB_SPECIAL = {"*": "[*]", "?": "[?]", "[": "[[]"}


class SQLiteGrammar(AnsiGrammar):
    def escape(self, value: Any) -> str:
        if isinstance(value, bool):
            return "1" if value else "0"
        return super().escape(value)

    def glob_escape(self, value: str) -> str:
        """Escape GLOB wildcards so ``value`` matches literally."""
        return "".join(_GLOB_SPECIAL.get(ch, ch) for ch in value)


class SQLiteTranslator(Translator):
    """SQLite's LIKE folds ASCII case, so case-sensitive matching uses GLOB."""

    grammar: SQLiteGrammar

    def _glob(self, column: str, pattern: str, params: Params) -> str:
        return f"{column} GLOB {params.add(pattern)}"

    def op_iexact(self, column: str, value: Any, params: Params) -> str:
        return f"{column} = {params.add(value)} COLLATE NOCASE"

    def op_contains(self, column: str, value: Any, params: Params) -> str:
        return self._glob(column, f"*{self.grammar.glob_escape(str(value))}*", params)

    def op_startswith(self, column: str, value: Any, params: Params) -> str:
        return self._glob(column, f"{self.grammar.glob_escape(str(value))}*", params)

    def op_endswith(self, column: str, value: Any, params: Params) -> str:
        return self._glob(column, f"*{self.grammar.glob_escape(str(value))}", params)

    def op_icontains(self, column: str, value: Any, params: Params) -> str:
        return self._like(column, f"%{self.grammar.like_escape(str(value))}%", params)

    def op_istartswith(self, column: str, value: Any, params: Params) -> str:
        return self._like(column, f"{self.grammar.like_escape(str(value))}%", params)

    def op_iendswith(self, column: str, value: Any, params: Params) -> str:
        return self._like(column, f"%{self.grammar.like_escape(str(value))}", params)

    def op_iregex(self, column: str, value: Any, params: Params) -> str:
        # REGEXP is backed by Python's re module, see adapters.sqlite
        return f"{column} REGEXP {params.add('(?i)' + str(value))}"

    def type_serial(self, **options: Any) -> str:
        return "integer primary key autoincrement"

    def type_float(self, **options: Any) -> str:
        return "real"

    def type_binary(self, **options: Any) -> str:
        return "blob"

    def type_datetime(self, **options: Any) -> str:
        return "datetime"


@dataclass
class SQLiteDialect(Dialect):
    name: str = "sqlite"
    grammar_class: type[Grammar] = SQLiteGrammar
    translator_class: type[Translator] = SQLiteTranslator
