"""
Migration Runner Module
Applies registered schema-change units exactly once, tracked in a ledger table.
"""

from typing import Dict, List, Optional, Sequence

from sqlalchemy import delete, insert, select
from sqlalchemy.engine import Engine

from agile_mirror.database.migrations import MIGRATIONS, Migration
from agile_mirror.database.models import MigrationRecord
from agile_mirror.errors import MigrationFailure
from agile_mirror.utils.helpers import utcnow
from agile_mirror.utils.logger import get_logger

logger = get_logger(__name__)

ledger = MigrationRecord.__table__


class MigrationRunner:
    """
    Compares the migration registry against the ledger and applies the gap.

    Each forward change runs in the same transaction as its ledger insert, so
    a unit that raises leaves no ledger row behind and is retried next run.
    """

    def __init__(self, engine: Engine, migrations: Sequence[Migration] = None):
        self.engine = engine
        units = list(MIGRATIONS if migrations is None else migrations)

        names = [unit.name for unit in units]
        duplicates = sorted({name for name in names if names.count(name) > 1})
        if duplicates:
            raise ValueError(f"Duplicate migration names: {', '.join(duplicates)}")

        self._units: Dict[str, Migration] = {unit.name: unit for unit in units}

    def ensure_ledger(self) -> None:
        """Create the ledger table on first run."""
        ledger.create(self.engine, checkfirst=True)

    def available(self) -> List[str]:
        """All registered unit names in application order."""
        return sorted(self._units)

    def executed(self) -> List[str]:
        """Names recorded in the ledger, in application order."""
        self.ensure_ledger()
        with self.engine.connect() as conn:
            rows = conn.execute(
                select(ledger.c.name).order_by(ledger.c.executed_at, ledger.c.name)
            ).fetchall()
        return [row[0] for row in rows]

    def pending(self) -> List[str]:
        """Registered units with no ledger row, in application order."""
        applied = set(self.executed())
        return [name for name in self.available() if name not in applied]

    def run(self) -> List[str]:
        """
        Apply every pending unit in order.

        Returns:
            Names of the units applied by this call

        Raises:
            MigrationFailure: A forward change raised; later units are not attempted
        """
        applied = []
        pending = self.pending()
        if not pending:
            logger.info("No pending migrations")
            return applied

        for name in pending:
            logger.info(f"Applying migration {name}")
            try:
                with self.engine.begin() as conn:
                    self._units[name].up(conn)
                    conn.execute(insert(ledger).values(name=name, executed_at=utcnow()))
            except Exception as e:
                logger.error(f"Migration {name} failed: {e}")
                raise MigrationFailure(name, 'up', e) from e
            applied.append(name)

        logger.info(f"Applied {len(applied)} migration(s)")
        return applied

    def rollback(self, name: Optional[str] = None) -> Optional[str]:
        """
        Revert the named unit, or the most recently applied one.

        Args:
            name: Unit to revert; defaults to the latest ledger entry

        Returns:
            Name of the reverted unit, or None when nothing is applied

        Raises:
            MigrationFailure: The reverse change raised; the ledger row is kept
        """
        executed = self.executed()
        if name is None:
            if not executed:
                logger.info("No applied migrations to roll back")
                return None
            name = executed[-1]
        elif name not in executed:
            raise ValueError(f"Migration {name} has not been applied")

        unit = self._units.get(name)
        if unit is None:
            raise ValueError(f"Migration {name} is recorded but not registered")

        logger.info(f"Rolling back migration {name}")
        try:
            with self.engine.begin() as conn:
                unit.down(conn)
                conn.execute(delete(ledger).where(ledger.c.name == name))
        except Exception as e:
            logger.error(f"Rollback of {name} failed: {e}")
            raise MigrationFailure(name, 'down', e) from e

        return name

    def status(self) -> Dict[str, List[str]]:
        """Executed and pending unit names."""
        executed = self.executed()
        return {
            'executed': executed,
            'pending': [name for name in self.available() if name not in set(executed)],
        }
