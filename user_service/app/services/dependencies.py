"""서비스들이 공유하는 레포지토리 DI 팩토리."""

from __future__ import annotations

from fastapi import Depends
from pymongo.database import Database

from common.mongo.client import get_database, get_mongo_config

from ..repositories.interfaces import (
    TransactionRepositoryInterface,
    UserRepositoryInterface,
    UserTombstoneRepositoryInterface,
)
from ..repositories.transaction_repository import TransactionRepository
from ..repositories.user_repository import UserRepository, UserTombstoneRepository


def get_user_repository(
    db: Database = Depends(get_database),
) -> UserRepositoryInterface:
    """FastAPI DI용 UserRepository 팩토리."""

    return UserRepository(db, timeout_seconds=get_mongo_config().timeout_seconds)


def get_transaction_repository(
    db: Database = Depends(get_database),
) -> TransactionRepositoryInterface:
    return TransactionRepository(db, timeout_seconds=get_mongo_config().timeout_seconds)


def get_user_tombstone_repository(
    db: Database = Depends(get_database),
) -> UserTombstoneRepositoryInterface:
    return UserTombstoneRepository(
        db, timeout_seconds=get_mongo_config().timeout_seconds
    )
