from __future__ import annotations

from dataclasses import dataclass


@dataclass(frozen=True, slots=True)
class Dialect:
    name: str
    quote: str
    placeholder: str

    def escape_id(self, identifier: str) -> str:
        """Quote an identifier, doubling any embedded quote character."""

        if not identifier:
            raise ValueError("identifier must not be empty")
        escaped = identifier.replace(self.quote, self.quote * 2)
        return f"{self.quote}{escaped}{self.quote}"


DIALECTS: dict[str, Dialect] = {
    "mysql": Dialect(name="mysql", quote="`", placeholder="%s"),
    "mariadb": Dialect(name="mariadb", quote="`", placeholder="%s"),
    "sqlite": Dialect(name="sqlite", quote='"', placeholder="?"),
}


def get_dialect(name: str) -> Dialect:
    try:
        return DIALECTS[name.lower()]
    except KeyError:
        raise ValueError(f"unsupported SQL dialect: {name!r}") from None


@dataclass(frozen=True, slots=True)
class SessionStatements:
    """The four statements the store issues, rendered once per table."""

    select: str
    upsert: str
    delete: str
    sweep: str

    @classmethod
    def build(cls, table: str, dialect: Dialect) -> "SessionStatements":
        t = dialect.escape_id(table)
        sid = dialect.escape_id("sid")
        session = dialect.escape_id("session")
        expires = dialect.escape_id("expires")
        p = dialect.placeholder

        if dialect.name == "sqlite":
            on_conflict = f"ON CONFLICT({sid}) DO UPDATE SET"
        else:
            on_conflict = "ON DUPLICATE KEY UPDATE"

        return cls(
            select=f"SELECT {session} FROM {t} WHERE {sid} = {p}",
            upsert=(
                f"INSERT INTO {t} ({sid}, {session}, {expires}) "
                f"VALUES ({p}, {p}, {p}) "
                f"{on_conflict} {session} = {p}, {expires} = {p}"
            ),
            delete=f"DELETE FROM {t} WHERE {sid} = {p}",
            sweep=f"DELETE FROM {t} WHERE {expires} > 0 AND {expires} < {p}",
        )
