import json

from linevault.cli import build_parser, main, parse_target
from linevault.models import SearchTarget


def test_parse_target():
    assert parse_target("node-1/accounts") == SearchTarget("node-1", "accounts")
    assert parse_target("accounts") == SearchTarget(None, "accounts")


def test_parser_task_options():
    args = build_parser().parse_args(["parse-all", "--node", "node-1", "--index", "dumps"])

    assert args.command == "parse-all"
    assert (args.node, args.index, args.interval) == ("node-1", "dumps", 1.0)


def test_no_command_prints_help(capsys):
    assert main([]) == 0
    assert "usage" in capsys.readouterr().out


def test_search_indices_show(tmp_path, capsys):
    config = tmp_path / "config.json"
    config.write_text(json.dumps({"search_indices": ["accounts"]}), encoding="utf-8")

    assert main(["--config", str(config), "search-indices", "show"]) == 0

    assert capsys.readouterr().out.strip() == "accounts"
    assert (tmp_path / "data" / "unparsed").is_dir()


def test_files_list(tmp_path, capsys):
    config = tmp_path / "config.json"
    config.write_text("{}", encoding="utf-8")
    (tmp_path / "data" / "pending").mkdir(parents=True)
    (tmp_path / "data" / "pending" / "dump.txt").write_text("a.com:u:p\n", encoding="utf-8")

    assert main(["--config", str(config), "files", "list"]) == 0

    out = capsys.readouterr().out
    assert "pending (1)" in out
    assert "dump.txt" in out


def test_errors_exit_with_status_one(tmp_path, capsys):
    config = tmp_path / "config.json"
    config.write_text("{broken", encoding="utf-8")

    assert main(["--config", str(config), "search-indices", "show"]) == 1
    assert "Invalid config file" in capsys.readouterr().err


def test_unknown_node_is_reported(tmp_path, capsys):
    config = tmp_path / "config.json"
    config.write_text("{}", encoding="utf-8")

    assert main(["--config", str(config), "nodes", "remove", "ghost"]) == 1
    assert "ghost" in capsys.readouterr().err


def test_tasks_lists_nothing_in_a_fresh_process(tmp_path, capsys):
    config = tmp_path / "config.json"
    config.write_text("{}", encoding="utf-8")

    args = build_parser().parse_args(["tasks", "--active"])
    assert (args.tasks_cmd, args.active) == ("list", True)

    assert main(["--config", str(config), "tasks", "--active"]) == 0
    assert capsys.readouterr().out == ""
