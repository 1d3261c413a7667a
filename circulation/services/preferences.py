"""Runtime configuration store backed by the ``system_preferences`` table.

A missing row, a NULL value or a value that does not parse falls back to the
default from ``Settings``; it is never an error for the engines.
"""

import logging
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal, InvalidOperation
from typing import Any, Callable, Dict, List, Optional

from ..config import settings
from ..database import get_db_connection, ts, unit_of_work
from ..errors import Forbidden, InvalidInput, NotFound
from ..models import Actor, utc_now

logger = logging.getLogger(__name__)

FINE_PER_DAY = "fine_per_day"
MAX_RENEWALS = "max_renewals"
HOLD_EXPIRY_DAYS = "hold_expiry_days"


def _non_negative_decimal(raw: str) -> Decimal:
    value = Decimal(raw)
    if not value.is_finite() or value < 0:
        raise ValueError(f"{raw!r} is not a non-negative amount")
    return value


def _non_negative_int(raw: str) -> int:
    value = int(raw)
    if value < 0:
        raise ValueError(f"{raw!r} is negative")
    return value


@dataclass(frozen=True)
class PreferenceSpec:
    parse: Callable[[str], Any]
    default: Callable[[], Any]
    explanation: str


PREFERENCES: Dict[str, PreferenceSpec] = {
    FINE_PER_DAY: PreferenceSpec(
        _non_negative_decimal,
        lambda: settings.default_fine_per_day,
        "Overdue fine charged per day late",
    ),
    MAX_RENEWALS: PreferenceSpec(
        _non_negative_int,
        lambda: settings.default_max_renewals,
        "Maximum renewals allowed per loan",
    ),
    HOLD_EXPIRY_DAYS: PreferenceSpec(
        _non_negative_int,
        lambda: settings.default_hold_expiry_days,
        "Days a ready-for-pickup hold waits before it expires",
    ),
}


class ConfigurationStore:
    """Key/value lookup with per-key defaults."""

    def __init__(self, db_file: Optional[str] = None, clock: Optional[Callable[[], datetime]] = None) -> None:
        self.db_file = db_file
        self.clock = clock or utc_now

    def get(self, conn, variable: str) -> Any:
        spec = PREFERENCES[variable]
        row = conn.execute(
            "SELECT value FROM system_preferences WHERE variable = ?", (variable,)
        ).fetchone()
        if row is None or row["value"] is None:
            return spec.default()
        try:
            return spec.parse(row["value"])
        except (ValueError, InvalidOperation):
            logger.warning(f"Ignoring unparsable preference {variable}={row['value']!r}; using default")
            return spec.default()

    def fine_per_day(self, conn) -> Decimal:
        return self.get(conn, FINE_PER_DAY)

    def max_renewals(self, conn) -> int:
        return self.get(conn, MAX_RENEWALS)

    def hold_expiry_days(self, conn) -> int:
        return self.get(conn, HOLD_EXPIRY_DAYS)

    # ------------------------- Staff administration ------------------------- #
    def list_preferences(self, actor: Actor) -> List[Dict[str, Any]]:
        """Return every known preference with its stored and effective value."""
        if not actor.is_staff:
            raise Forbidden("Only staff may view system preferences")
        conn = get_db_connection(self.db_file)
        try:
            rows = {
                row["variable"]: row
                for row in conn.execute("SELECT variable, value, explanation, updated_at FROM system_preferences")
            }
            result = []
            for variable in sorted(PREFERENCES):
                row = rows.get(variable)
                result.append({
                    "variable": variable,
                    "value": row["value"] if row else None,
                    "effective_value": str(self.get(conn, variable)),
                    "explanation": (row["explanation"] if row and row["explanation"] else PREFERENCES[variable].explanation),
                    "updated_at": row["updated_at"] if row else None,
                })
            return result
        finally:
            conn.close()

    def update_preference(self, variable: str, value: Optional[str], actor: Actor,
                          explanation: Optional[str] = None) -> Dict[str, Any]:
        """Store a new value; ``None`` clears it so the default applies again."""
        if not actor.is_staff:
            raise Forbidden("Only staff may change system preferences")
        spec = PREFERENCES.get(variable)
        if spec is None:
            raise NotFound(f"Preference {variable} not found")
        if value is not None:
            try:
                spec.parse(value)
            except (ValueError, InvalidOperation) as e:
                raise InvalidInput(f"Invalid value for {variable}: {value!r}") from e

        now = self.clock()
        with unit_of_work(self.db_file) as conn:
            conn.execute(
                """
                INSERT INTO system_preferences (variable, value, explanation, updated_at)
                VALUES (?, ?, ?, ?)
                ON CONFLICT(variable) DO UPDATE SET
                    value = excluded.value,
                    explanation = COALESCE(excluded.explanation, system_preferences.explanation),
                    updated_at = excluded.updated_at
                """,
                (variable, value, explanation, ts(now)),
            )
            effective = self.get(conn, variable)
        logger.info(f"Preference updated: {variable}={value!r} by actor={actor.id}")
        return {
            "variable": variable,
            "value": value,
            "effective_value": str(effective),
            "explanation": explanation or spec.explanation,
            "updated_at": ts(now),
        }
