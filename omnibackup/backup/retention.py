"""
Retention strategies for backup targets.

A strategy stores the archives of a run in a dated bucket on its target and
then prunes the bucket that fell out of its retention window:

- DaysStrategy: keep the last N daily buckets
- GenerationsStrategy: daily buckets for a week, Monday buckets for four
  weeks, the first Monday of every month forever
"""

from abc import ABC, abstractmethod
from datetime import datetime, timedelta, timezone
from typing import Iterable, List, Optional

from omnibackup.utils.logsink import RunLogger
from .definitions import StrategyConfig
from .storage import TargetProvider

BUCKET_FORMAT = '%Y-%m-%d'


def to_utc(when: datetime) -> datetime:
    """Express a timestamp in UTC; naive timestamps are taken as UTC already."""
    if when.tzinfo is None:
        return when.replace(tzinfo=timezone.utc)
    return when.astimezone(timezone.utc)


class RetentionStrategy(ABC):
    """
    Base class for retention strategies.

    The timestamp is fixed when the strategy is created so bucket naming and
    pruning within one run agree on the same day.
    """

    def __init__(self, config: StrategyConfig, target: TargetProvider, logger: RunLogger,
                 timestamp: Optional[datetime] = None):
        """
        Initialize strategy.

        Args:
            config: Strategy configuration
            target: Target the strategy stores to and prunes
            logger: Run logger
            timestamp: Run time, converted to UTC (UTC now when omitted)
        """
        self.config = config
        self.target = target
        self.logger = logger
        self.timestamp = to_utc(timestamp) if timestamp else datetime.now(timezone.utc)

    @property
    def name(self) -> str:
        return self.target.name

    @staticmethod
    def bucket_key(when: datetime) -> str:
        return when.strftime(BUCKET_FORMAT)

    def save(self, files: Iterable[str]) -> List[str]:
        """
        Store files in today's bucket, then prune.

        Args:
            files: Archive paths

        Returns:
            Paths saved by the target
        """
        saved = self.target.save(self.bucket_key(self.timestamp), files)

        try:
            self.prune()
        except Exception as e:
            self.logger.error(self.name, 'Could not delete old backups. Error: %s', e)

        return saved

    @abstractmethod
    def expired_buckets(self) -> List[str]:
        """Buckets to delete for the current timestamp."""

    def prune(self):
        for bucket in self.expired_buckets():
            self.logger.verbose(self.name, 'Deleting bucket %s.', bucket)
            self.target.delete_bucket(bucket)


class DaysStrategy(RetentionStrategy):
    """Keeps ``revisions`` daily buckets; 0 keeps everything."""

    def expired_buckets(self) -> List[str]:
        revisions = self.config.revisions
        if revisions <= 0:
            return []
        return [self.bucket_key(self.timestamp - timedelta(days=revisions))]


class GenerationsStrategy(RetentionStrategy):
    """
    Grandfather-father-son rotation.

    On weekdays other than Monday the bucket of the same weekday last week is
    removed, so Mondays survive as weekly buckets. On Monday the weekly bucket
    from four weeks ago is removed unless it was the first Monday of its
    month, which is kept as a monthly bucket.
    """

    def expired_buckets(self) -> List[str]:
        if self.timestamp.weekday() != 0:
            return [self.bucket_key(self.timestamp - timedelta(days=7))]

        date = self.timestamp - timedelta(days=28)
        if date.month == (date - timedelta(days=7)).month:
            return [self.bucket_key(date)]

        return []
