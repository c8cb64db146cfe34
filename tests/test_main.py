from mintwatch.__main__ import build_parser, main


def test_parser_defaults():
    args = build_parser().parse_args([])
    assert args.config is None
    assert args.log_level is None
    assert args.maintenance_interval == 3600.0


def test_bad_config_exits_with_usage_error(tmp_path, capsys):
    assert main(["--config", str(tmp_path / "missing.toml")]) == 2
    assert "configuration error" in capsys.readouterr().err
