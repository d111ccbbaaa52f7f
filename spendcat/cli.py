"""
Command line entry point.

Usage:
    spendcat init-db
    spendcat add-expense "Blue Bottle Hayes" 5500 --text "card approval ..."
    spendcat lookup "Blue Bottle Hayes"
    spendcat classify --max-rounds 5
    spendcat reclassify --threshold 0.9
    spendcat set-category "Blue Bottle Hayes" Cafe
    spendcat stats
"""

import argparse
import asyncio
import json
import logging
import sys
from pathlib import Path

from dotenv import load_dotenv

from spendcat.database import DatabaseManager
from spendcat.database import crud
from spendcat.matching import CLASSIFIABLE_CATEGORIES, build_classifier
from spendcat.matching.classifier import CorrectionScope
from spendcat.utils.config_manager import ConfigManager

logger = logging.getLogger("spendcat")


def _setup_logging(verbose: bool = False) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(asctime)s  %(levelname)-8s  %(name)s  %(message)s",
    )


def _load_config(args) -> ConfigManager:
    if args.config:
        return ConfigManager(Path(args.config))
    return ConfigManager.from_default_path()


# ═══════════════════════════════════════════════════════════════════════════════
#  Commands
# ═══════════════════════════════════════════════════════════════════════════════

async def cmd_init_db(args, db: DatabaseManager, config: ConfigManager) -> bool:
    await db.create_all_tables()
    logger.info(f"Database ready: {db.db_path}")
    return True


async def cmd_add_expense(args, db: DatabaseManager, config: ConfigManager) -> bool:
    classifier = build_classifier(db, config)
    category = await classifier.get_category(args.store_name, args.text or "")
    async with db.session_scope() as session:
        record = await crud.insert_expense(
            session,
            store_name=args.store_name,
            amount=args.amount,
            category=category,
            original_text=args.text,
        )
    print(f"#{record.id} {args.store_name} {args.amount} -> {category}")
    return True


async def cmd_lookup(args, db: DatabaseManager, config: ConfigManager) -> bool:
    classifier = build_classifier(db, config)
    result = await classifier.classify(args.store_name, args.text or "")
    print(json.dumps(result.to_dict(), ensure_ascii=False, indent=2))
    return result.is_classified


async def cmd_classify(args, db: DatabaseManager, config: ConfigManager) -> bool:
    classifier = build_classifier(db, config)
    if not classifier.has_oracle():
        logger.warning("Oracle disabled; only rules will classify in bulk")

    def on_progress(round_number, updated, remaining):
        print(f"round {round_number}: {updated} updated, {remaining} remaining")

    max_rounds = args.max_rounds or config.get_max_rounds()
    total = await classifier.classify_all_until_complete(max_rounds=max_rounds, on_progress=on_progress)
    print(f"{total} records classified")
    return True


async def cmd_reclassify(args, db: DatabaseManager, config: ConfigManager) -> bool:
    classifier = build_classifier(db, config)
    count = await classifier.reclassify_low_confidence(args.threshold)
    print(f"{count} store names reclassified")
    return True


async def cmd_set_category(args, db: DatabaseManager, config: ConfigManager) -> bool:
    if args.category not in CLASSIFIABLE_CATEGORIES:
        logger.error(f"Unknown category '{args.category}'. Choose from: {', '.join(CLASSIFIABLE_CATEGORIES)}")
        return False
    classifier = build_classifier(db, config)
    if args.expense_id is not None:
        updated = await classifier.set_category(
            args.store_name, args.category, CorrectionScope.SINGLE_RECORD, expense_id=args.expense_id
        )
    else:
        updated = await classifier.set_category(args.store_name, args.category)
    print(f"{updated} records set to {args.category}")
    return True


async def cmd_stats(args, db: DatabaseManager, config: ConfigManager) -> bool:
    classifier = build_classifier(db, config)
    stats = await classifier.get_classification_stats()
    print(json.dumps(stats, indent=2))
    return True


async def _run(args) -> bool:
    config = _load_config(args)
    db = DatabaseManager(args.database or config.get_database_path())
    try:
        if args.command != "init-db":
            await db.create_all_tables()
        return await COMMANDS[args.command](args, db, config)
    finally:
        await db.close()


COMMANDS = {
    "init-db": cmd_init_db,
    "add-expense": cmd_add_expense,
    "lookup": cmd_lookup,
    "classify": cmd_classify,
    "reclassify": cmd_reclassify,
    "set-category": cmd_set_category,
    "stats": cmd_stats,
}


# ═══════════════════════════════════════════════════════════════════════════════
#  CLI
# ═══════════════════════════════════════════════════════════════════════════════

def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="spendcat",
        description="Spending category classifier",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument("-v", "--verbose", action="store_true")
    parser.add_argument("--config", help="Path to YAML config (default: config/classifier_config.yaml)")
    parser.add_argument("--database", "-d", help="SQLite database path (overrides config)")
    sub = parser.add_subparsers(dest="command", required=True)

    sub.add_parser("init-db", help="Create database tables")

    p_add = sub.add_parser("add-expense", help="Record an expense and classify its store")
    p_add.add_argument("store_name")
    p_add.add_argument("amount", type=int)
    p_add.add_argument("--text", help="Original notification text")

    p_lookup = sub.add_parser("lookup", help="Classify one store name")
    p_lookup.add_argument("store_name")
    p_lookup.add_argument("--text", help="Context text for keyword rules")

    p_classify = sub.add_parser("classify", help="Run bulk rounds over unclassified records")
    p_classify.add_argument("--max-rounds", type=int)

    p_reclassify = sub.add_parser("reclassify", help="Re-ask the oracle about low-confidence stores")
    p_reclassify.add_argument("--threshold", type=float)

    p_set = sub.add_parser("set-category", help="Correct a store's category")
    p_set.add_argument("store_name")
    p_set.add_argument("category")
    p_set.add_argument("--expense-id", type=int, help="Only update this record")

    sub.add_parser("stats", help="Print classification statistics")
    return parser


def main(argv=None):
    load_dotenv()
    args = build_parser().parse_args(argv)
    _setup_logging(args.verbose)
    ok = asyncio.run(_run(args))
    sys.exit(0 if ok else 1)


if __name__ == "__main__":
    main()
