import threading
from datetime import date, timedelta
from typing import Iterable, Optional

from core.clock import Clock, utcnow
from core.errors import AuthorizationError, NotFoundError
from core.logging import get_logger

from .models import ConfigSnapshot, ConfigVersion, FormulaParameters, ProgramConfig

log = get_logger(__name__)


class ConfigStore:
    """
    Versioned program configuration.

    Every change is appended as a new version that takes effect on the next
    accounting day. ``effective(day)`` answers which parameters were in force
    on a given day, so grants and period runs never pick up a change
    retroactively. When several changes target the same day the highest
    version wins; all of them stay in the history.
    """

    def __init__(
        self,
        program: ProgramConfig,
        formula: FormulaParameters,
        admins: Iterable[str],
        clock: Clock = utcnow,
        created_by: str = "bootstrap",
    ):
        self._admins = set(admins)
        self._clock = clock
        self._lock = threading.Lock()
        self._versions: list[ConfigVersion] = [
            ConfigVersion(
                version=1,
                effective_from=date.min,
                program=program,
                formula=formula,
                changed_by=created_by,
                reason="initial configuration",
                changed_at=clock(),
            )
        ]

    def is_admin(self, actor: str) -> bool:
        return actor in self._admins

    def today(self) -> date:
        return self._clock().date()

    def effective(self, day: date) -> ConfigVersion:
        with self._lock:
            for version in reversed(self._versions):
                if version.effective_from <= day:
                    return version
        raise NotFoundError(f"No configuration in force on {day}")

    def get(self) -> ConfigSnapshot:
        today = self.today()
        current = self.effective(today)
        with self._lock:
            latest = self._versions[-1]
        pending = latest if latest.effective_from > today else None
        return ConfigSnapshot(current=current, pending=pending)

    def history(self) -> list[ConfigVersion]:
        with self._lock:
            return list(self._versions)

    def set_program_config(self, actor: str, program: ProgramConfig, reason: str) -> ConfigVersion:
        return self._append(actor, reason, program=program)

    def set_formula_parameters(self, actor: str, formula: FormulaParameters, reason: str) -> ConfigVersion:
        return self._append(actor, reason, formula=formula)

    def _append(
        self,
        actor: str,
        reason: str,
        program: Optional[ProgramConfig] = None,
        formula: Optional[FormulaParameters] = None,
    ) -> ConfigVersion:
        if not self.is_admin(actor):
            log.warning("config_change_denied", actor=actor)
            raise AuthorizationError("Only administrators may change program configuration",
                                     actor=actor, required_role="admin")

        now = self._clock()
        with self._lock:
            latest = self._versions[-1]
            version = ConfigVersion(
                version=latest.version + 1,
                effective_from=now.date() + timedelta(days=1),
                program=program or latest.program,
                formula=formula or latest.formula,
                changed_by=actor,
                reason=reason,
                changed_at=now,
            )
            self._versions.append(version)

        log.info(
            "config_changed",
            version=version.version,
            effective_from=str(version.effective_from),
            actor=actor,
            daily_budget=str(version.program.daily_budget),
            reason=reason,
        )
        return version
