"""MySQL dialect.

MySQL has no RETURNING clause; inserts rely on the driver's last insert id
instead, which the executing adapter reports back as the returned keys.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any

from querykit.dialects.base import AnsiGrammar, Dialect, Grammar, Params, Phrasing, Translator

# Largest LIMIT MySQL accepts; used when only an OFFSET is given.
MAX_LIMIT = 18446744073709551615


class MySQLGrammar(AnsiGrammar):
    quote_char = "`"

    def placeholder(self, index: int) -> str:
        return "%s"

    def escape_string(self, value: str) -> str:
        return "'" + value.replace("\\", "\\\\").replace("'", "''") + "'"


class MySQLTranslator(Translator):
    like_escape_clause = ""

    def op_iexact(self, column: str, value: Any, params: Params) -> str:
        return f"{column} LIKE {params.add(self.grammar.like_escape(str(value)))}"

    def _like_binary(self, column: str, pattern: str, params: Params) -> str:
        return f"{column} LIKE BINARY {params.add(pattern)}"

    def op_contains(self, column: str, value: Any, params: Params) -> str:
        return self._like_binary(column, f"%{self.grammar.like_escape(str(value))}%", params)

    def op_startswith(self, column: str, value: Any, params: Params) -> str:
        return self._like_binary(column, f"{self.grammar.like_escape(str(value))}%", params)

    def op_endswith(self, column: str, value: Any, params: Params) -> str:
        return self._like_binary(column, f"%{self.grammar.like_escape(str(value))}", params)

    def op_icontains(self, column: str, value: Any, params: Params) -> str:
        return self._like(column, f"%{self.grammar.like_escape(str(value))}%", params)

    def op_istartswith(self, column: str, value: Any, params: Params) -> str:
        return self._like(column, f"{self.grammar.like_escape(str(value))}%", params)

    def op_iendswith(self, column: str, value: Any, params: Params) -> str:
        return self._like(column, f"%{self.grammar.like_escape(str(value))}", params)

    def op_regex(self, column: str, value: Any, params: Params) -> str:
        return f"{column} REGEXP BINARY {params.add(value)}"

    def op_iregex(self, column: str, value: Any, params: Params) -> str:
        return f"{column} REGEXP {params.add(value)}"

    def type_serial(self, **options: Any) -> str:
        return "integer primary key auto_increment"

    def type_bool(self, **options: Any) -> str:
        return "tinyint(1)"

    def type_float(self, **options: Any) -> str:
        return "double"

    def type_decimal(self, precision: int | None = None, scale: int | None = None, **options: Any) -> str:
        if precision is None:
            return "decimal(64, 30)"
        if scale is None:
            return f"decimal({precision})"
        return f"decimal({precision}, {scale})"

    def type_binary(self, **options: Any) -> str:
        return "longblob"

    def type_datetime(self, **options: Any) -> str:
        return "datetime"


class MySQLPhrasing(Phrasing):
    begin_sql = "START TRANSACTION"

    def limit_clause(self, limit: int | None, offset: int | None) -> str:
        if limit is None and offset is not None:
            limit = MAX_LIMIT
        return super().limit_clause(limit, offset)

    def default_values(self, count: int) -> str:
        return " () VALUES " + ", ".join("()" for _ in range(count))


@dataclass
class MySQLDialect(Dialect):
    name: str = "mysql"
    supports_returning: bool = False
    grammar_class: type[Grammar] = MySQLGrammar
    translator_class: type[Translator] = MySQLTranslator
    phrasing_class: type[Phrasing] = MySQLPhrasing
