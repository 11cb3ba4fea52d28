"""
linkrewards/worker/state.py

Persistent scheduler progress.

SchedulerState is an immutable value: every transition returns a new
state and the scheduler decides when to persist it. Saves are atomic
(temp file, fsync, rename) so a crash mid-write leaves the previous
state intact.
"""

import json
import logging
import os
import shutil
from dataclasses import dataclass, replace
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional, Union

logger = logging.getLogger("linkrewards.worker.state")


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _parse_time(value: Optional[str]) -> Optional[datetime]:
    return datetime.fromisoformat(value) if value else None


@dataclass(frozen=True)
class SchedulerState:
    last_processed_epoch: Optional[int] = None
    consecutive_failures: int = 0
    last_check_time: Optional[datetime] = None
    last_success_time: Optional[datetime] = None

    # ---------------------------------------------------------- transitions

    def record_success(self, epoch: int, now: Optional[datetime] = None) -> "SchedulerState":
        logger.info(f"Marked epoch {epoch} as successfully processed")
        return replace(
            self,
            last_processed_epoch=epoch,
            last_success_time=now or _now(),
            consecutive_failures=0,
        )

    def record_failure(self) -> "SchedulerState":
        failures = self.consecutive_failures + 1
        logger.error(f"Marked failure, consecutive failures: {failures}")
        return replace(self, consecutive_failures=failures)

    def record_check(self, now: Optional[datetime] = None) -> "SchedulerState":
        return replace(self, last_check_time=now or _now())

    # -------------------------------------------------------------- queries

    def should_process_epoch(self, epoch: int) -> bool:
        if self.last_processed_epoch is None:
            return True
        return epoch > self.last_processed_epoch

    def is_in_failure_state(self, max_failures: int) -> bool:
        return self.consecutive_failures >= max_failures

    # ---------------------------------------------------------- persistence

    def to_dict(self) -> dict:
        return {
            "last_processed_epoch": self.last_processed_epoch,
            "consecutive_failures": self.consecutive_failures,
            "last_check_time": self.last_check_time.isoformat() if self.last_check_time else None,
            "last_success_time": self.last_success_time.isoformat() if self.last_success_time else None,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "SchedulerState":
        epoch = data.get("last_processed_epoch")
        failures = data.get("consecutive_failures", 0)
        if epoch is not None and (not isinstance(epoch, int) or epoch < 0):
            raise ValueError(f"invalid last_processed_epoch {epoch!r}")
        if not isinstance(failures, int) or failures < 0:
            raise ValueError(f"invalid consecutive_failures {failures!r}")
        return cls(
            last_processed_epoch=epoch,
            consecutive_failures=failures,
            last_check_time=_parse_time(data.get("last_check_time")),
            last_success_time=_parse_time(data.get("last_success_time")),
        )

    @classmethod
    def load_or_default(cls, path: Union[str, Path]) -> "SchedulerState":
        """
        Load state from path, or a fresh state if there is none.

        A corrupt file is copied to <path>.backup and replaced by a fresh
        state rather than stopping the scheduler.
        """
        path = Path(path)
        if not path.exists():
            logger.debug(f"No existing scheduler state found at {path}, creating new")
            return cls()
        try:
            with open(path, "r") as f:
                state = cls.from_dict(json.load(f))
        except (json.JSONDecodeError, ValueError, TypeError, AttributeError) as e:
            backup = path.with_name(path.name + ".backup")
            logger.warning(f"State file corrupted: {e}. Creating backup at {backup} and starting fresh")
            try:
                shutil.copyfile(path, backup)
            except OSError as backup_err:
                logger.warning(f"Failed to backup corrupted state file: {backup_err}")
            return cls()
        logger.info(
            f"Loaded scheduler state: last_processed_epoch={state.last_processed_epoch}, "
            f"consecutive_failures={state.consecutive_failures}"
        )
        return state

    def save(self, path: Union[str, Path]) -> None:
        """Atomically write the state to path."""
        path = Path(path)
        path.parent.mkdir(parents=True, exist_ok=True)
        tmp = path.with_name(path.name + ".tmp")
        with open(tmp, "w") as f:
            json.dump(self.to_dict(), f, indent=2)
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp, path)
        logger.debug(f"Saved scheduler state atomically to {path}")
