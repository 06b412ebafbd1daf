from __future__ import annotations

import asyncio
import logging

from card_timeline.db import SessionLocal, init_db
from card_timeline.milestones.categories import seed_default_categories

logger = logging.getLogger(__name__)


async def seed() -> None:
  await init_db()
  async with SessionLocal() as db:
    if await seed_default_categories(db):
      logger.info("Seeded default categories")


def main() -> None:
  logging.basicConfig(level=logging.INFO)
  asyncio.run(seed())


if __name__ == "__main__":
  main()
