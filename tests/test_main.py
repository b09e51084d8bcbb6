import pathlib

import main

def test_parse_args():
    args = main.parse_args(["-c", "ci.toml", "-d", "-d", "server", "-l", "127.0.0.1:8080", "-b", "master", "-b", "next"])
    assert args.config == "ci.toml"
    assert args.debug == 2
    assert args.command == "server"
    assert args.listen == "127.0.0.1:8080"
    assert args.branches == ["master", "next"]

    args = main.parse_args(["fuzz", "checkout-dir", "-p", "proj"])
    assert args.config == "fuzz-ci.toml"
    assert (args.dir, args.projects) == ("checkout-dir", ["proj"])

def test_missing_config(tmp_path: pathlib.Path):
    assert main.main(["-c", str(tmp_path / "missing.toml"), "checkout", "dir", "repo", "master"]) == 1
