# Copyright © 2025 Phaethon Order LLC. All rights reserved. Provided solely for evaluation. See LICENSE.
from __future__ import annotations

import argparse
from typing import List, Optional, Sequence

from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError

# The models import registers the tables with SQLAlchemy's metadata.
from database import models  # noqa: F401
from database.session import Base, create_db_engine, engine, make_session_factory
from utils.logger import get_logger, setup_logger

logger = get_logger(__name__)


def init_database(*, bind: Optional[Engine] = None, drop_existing: bool = False) -> None:
    """Create the payments, subscriptions, users and webhook ledger tables."""
    target = bind or engine
    try:
        if drop_existing:
            logger.warning("Dropping existing tables before re-creating schema.")
            Base.metadata.drop_all(bind=target)
        Base.metadata.create_all(bind=target)
    except SQLAlchemyError as exc:
        logger.exception("Failed to initialise database schema: %s", exc)
        raise
    else:
        logger.info("Database schema initialised on %s", target.url.render_as_string(hide_password=True))


def seed_users(bind: Engine, specs: Sequence[str]) -> List[str]:
    """Insert development users given as ``id[:email[:name]]``; existing ids are skipped."""
    session_factory = make_session_factory(bind)
    created: List[str] = []
    with session_factory() as db:
        for spec in specs:
            user_id, _, rest = spec.partition(":")
            email, _, name = rest.partition(":")
            if not user_id:
                raise ValueError(f"Invalid user spec '{spec}': id is required")
            if db.get(models.User, user_id) is not None:
                logger.info("User %s already exists; skipping", user_id)
                continue
            db.add(models.User(id=user_id, email=email or None, name=name or None))
            created.append(user_id)
        db.commit()
    if created:
        logger.info("Seeded users: %s", ", ".join(created))
    return created


def _parse_args(argv: Optional[list[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Initialise the database schema for the catering payments service."
    )
    parser.add_argument(
        "--drop-existing",
        action="store_true",
        help="Drop existing tables before creating the schema.",
    )
    parser.add_argument(
        "--database-url",
        default=None,
        help="Override DATABASE_URL for this run.",
    )
    parser.add_argument(
        "--seed-user",
        action="append",
        default=[],
        metavar="ID[:EMAIL[:NAME]]",
        help="Insert a development user; may be repeated.",
    )
    return parser.parse_args(argv)


def main(argv: Optional[list[str]] = None) -> None:
    setup_logger()
    args = _parse_args(argv)
    target = create_db_engine(args.database_url) if args.database_url else engine
    init_database(bind=target, drop_existing=args.drop_existing)
    if args.seed_user:
        seed_users(target, args.seed_user)


if __name__ == "__main__":
    main()
