"""Reconcile normalized profiles with storage and insert the new ones.

Duplicates (by ``username``) are skipped and never updated, so uploading the
same file twice is harmless. The existing-username lookup only saves writes;
the unique index on ``username`` decides races between concurrent uploads.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Iterable

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError, InterfaceError, OperationalError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from .. import models
from .normalization import BOOLEAN_FIELDS, ProfileCandidate

logger = logging.getLogger(__name__)

CONNECTION_ERRORS = (OperationalError, InterfaceError, OSError)


class StorageConnectionError(Exception):
    """Raised when the database cannot be reached. Nothing has been written."""
    pass


class StorageWriteError(Exception):
    """Raised when the batch insert fails for a reason other than a username collision."""
    pass


class DuplicateKeyError(Exception):
    """Usernames inserted by a concurrent upload after the lookup."""

    def __init__(self, usernames: set[str]):
        self.usernames = usernames
        super().__init__(f"Usernames inserted concurrently: {', '.join(sorted(usernames))}")


@dataclass
class Partition:
    new: list[ProfileCandidate] = field(default_factory=list)
    duplicates: list[ProfileCandidate] = field(default_factory=list)


@dataclass
class PersistResult:
    """Outcome of a persistence run, by username."""
    inserted: list[str] = field(default_factory=list)
    duplicates: list[str] = field(default_factory=list)
    collided: list[str] = field(default_factory=list)


async def find_existing_usernames(session: AsyncSession, usernames: Iterable[str]) -> set[str]:
    """Return the subset of ``usernames`` already stored.

    Only the username column is fetched.

    Raises:
        StorageConnectionError: If the database is unreachable
    """
    wanted = set(usernames)
    if not wanted:
        return set()

    query = select(models.Profile.username).where(models.Profile.username.in_(wanted))
    try:
        result = await session.execute(query)
    except CONNECTION_ERRORS as e:
        logger.error(f"Existing-username lookup failed: {e}", exc_info=True)
        raise StorageConnectionError(f"Error connecting to the database: {e}") from e

    return set(result.scalars().all())


def partition_candidates(
    candidates: Iterable[ProfileCandidate],
    existing: set[str],
) -> Partition:
    """Split candidates into new and duplicate by username.

    A username repeated within the same upload counts as a duplicate after its
    first occurrence.
    """
    partition = Partition()
    seen: set[str] = set()

    for candidate in candidates:
        if candidate.username in existing or candidate.username in seen:
            partition.duplicates.append(candidate)
        else:
            seen.add(candidate.username)
            partition.new.append(candidate)

    return partition


def to_model(candidate: ProfileCandidate) -> models.Profile:
    """Build an ORM row. Flags that did not coerce to a boolean are stored as NULL."""
    values = candidate.to_dict()
    for name in BOOLEAN_FIELDS:
        value = values[name]
        if value is not None and not isinstance(value, bool):
            logger.warning(f"Non-boolean value {value!r} for {name} of {candidate.username}; storing NULL")
            values[name] = None
    return models.Profile(**values)


async def _insert_batch(session: AsyncSession, candidates: list[ProfileCandidate]) -> list[str]:
    """Insert candidates in one commit.

    Raises:
        DuplicateKeyError: If some usernames were stored by someone else meanwhile;
            nothing from this batch is written
        StorageWriteError: For any other failure
    """
    try:
        session.add_all([to_model(c) for c in candidates])
        await session.commit()
    except IntegrityError as e:
        await session.rollback()
        taken = await find_existing_usernames(session, [c.username for c in candidates])
        if not taken:
            logger.error(f"Batch insert failed: {e}", exc_info=True)
            raise StorageWriteError(f"Error saving data to database: {e.orig}") from e
        raise DuplicateKeyError(taken) from e
    except (SQLAlchemyError, OSError) as e:
        await session.rollback()
        logger.error(f"Batch insert failed: {e}", exc_info=True)
        raise StorageWriteError(f"Error saving data to database: {e}") from e

    return [c.username for c in candidates]


async def persist_new_profiles(
    session: AsyncSession,
    candidates: list[ProfileCandidate],
) -> PersistResult:
    """Insert the candidates whose username is not stored yet.

    Args:
        session: Database session (owned by the caller)
        candidates: Normalized profiles from one upload

    Returns:
        PersistResult listing inserted, duplicate and race-collided usernames

    Raises:
        StorageConnectionError: If the lookup cannot reach the database
        StorageWriteError: If the insert fails for another reason
    """
    existing = await find_existing_usernames(session, [c.username for c in candidates])
    partition = partition_candidates(candidates, existing)

    for candidate in partition.duplicates:
        logger.info(f"Username already exists: {candidate.username}")

    result = PersistResult(duplicates=[c.username for c in partition.duplicates])
    if not partition.new:
        logger.info("No new profiles to insert")
        return result

    # Each collision round removes at least one candidate, so this terminates.
    pending = partition.new
    while pending:
        try:
            result.inserted = await _insert_batch(session, pending)
            break
        except DuplicateKeyError as e:
            for username in sorted(e.usernames):
                logger.warning(f"Username inserted concurrently, skipping: {username}")
            result.collided.extend(sorted(e.usernames))
            pending = [c for c in pending if c.username not in e.usernames]

    logger.info(
        f"Inserted {len(result.inserted)} profiles "
        f"({len(result.duplicates)} duplicates, {len(result.collided)} collisions)"
    )
    return result
