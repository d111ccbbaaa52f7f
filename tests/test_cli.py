"""
Tests for the command line entry point.
"""

import pytest

from spendcat.cli import build_parser, main


def test_parser_subcommands():
    parser = build_parser()
    args = parser.parse_args(["set-category", "Harbor Books", "Culture", "--expense-id", "3"])
    assert args.command == "set-category"
    assert args.expense_id == 3

    args = parser.parse_args(["-v", "classify", "--max-rounds", "2"])
    assert args.verbose
    assert args.max_rounds == 2


def test_command_required():
    with pytest.raises(SystemExit):
        build_parser().parse_args([])


def test_init_db_creates_file(tmp_path):
    db_path = tmp_path / "data" / "spendcat.db"
    with pytest.raises(SystemExit) as exc:
        main(["--database", str(db_path), "init-db"])
    assert exc.value.code == 0
    assert db_path.exists()


def test_unknown_category_rejected(tmp_path):
    with pytest.raises(SystemExit) as exc:
        main(["--database", str(tmp_path / "spendcat.db"), "set-category", "Harbor Books", "Groceries"])
    assert exc.value.code == 1
