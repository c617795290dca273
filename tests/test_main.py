"""
Command line tests: each command runs against a temporary database.
"""

import logging

import pytest
import yaml

from main import build_parser, main


@pytest.fixture
def config_file(tmp_path, connection_string):
    path = tmp_path / "config.yaml"
    path.write_text(yaml.dump({
        "database": {"connection_string": connection_string},
        "logging": {"level": "WARNING"},
    }))
    return str(path)


@pytest.fixture(autouse=True)
def restore_root_logger():
    root = logging.getLogger()
    handlers, level = list(root.handlers), root.level
    yield
    root.handlers = handlers
    root.setLevel(level)


def run(config_file, *argv):
    return main(["--config", config_file, *argv])


def test_no_command_prints_help(capsys):
    assert main([]) == 1
    assert "usage" in capsys.readouterr().out.lower()


def test_parser_rejects_unknown_range():
    with pytest.raises(SystemExit):
        build_parser().parse_args(["tx", "list", "--range", "decade"])


def test_add_and_list_transactions(config_file, capsys):
    assert run(config_file, "tx", "add", "-d", "Coffee", "-a", "4.50", "--category", "Groceries") == 0
    assert "Added transaction" in capsys.readouterr().out

    assert run(config_file, "tx", "list", "--category", "Groceries") == 0
    out = capsys.readouterr().out
    assert "Coffee" in out
    assert "$4.50" in out


def test_budget_allocation_and_suggestions(config_file, capsys):
    assert run(config_file, "budget", "set", "--income", "3000", "--period", "biweekly") == 0
    assert "Saved income $3,000.00 (biweekly)" in capsys.readouterr().out

    assert run(config_file, "allocate", "--id", "1", "--amount", "1200") == 0
    out = capsys.readouterr().out
    assert "Allocated $1,200.00 to 'Rent'" in out
    assert "Remaining: $1,800.00" in out

    assert run(config_file, "budget", "show") == 0
    assert "Consider allocating at least 10% to savings ($300)" in capsys.readouterr().out


def test_category_commands(config_file, capsys):
    assert run(config_file, "category", "add", "--name", "Fuel") == 0
    assert "Created category 'Fuel'" in capsys.readouterr().out

    assert run(config_file, "category", "add", "--name", "Fuel") == 1
    assert "Category already exists" in capsys.readouterr().err

    assert run(config_file, "category", "list") == 0
    out = capsys.readouterr().out
    assert out.index("Rent") < out.index("Fuel")


def test_edit_missing_transaction_fails(config_file, capsys):
    assert run(config_file, "tx", "edit", "--id", "999", "--amount", "5") == 1
    assert "Transaction not found" in capsys.readouterr().err


def test_reconcile_command(config_file, capsys):
    run(config_file, "tx", "add", "-d", "Rent", "-a", "1200", "--category", "Rent")
    capsys.readouterr()

    assert run(config_file, "reconcile") == 0
    assert "$1,200.00" in capsys.readouterr().out
