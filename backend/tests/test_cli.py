from skema_daemon.cli import build_parser, main


def test_serve_is_the_default_command():
    args = build_parser().parse_args(["--provider", "claude", "-d", "/tmp/project"])
    assert args.command is None
    assert args.provider == "claude"
    assert args.cwd == "/tmp/project"
    assert args.port is None


def test_serve_flags():
    args = build_parser().parse_args(["serve", "-p", "1234", "--mode", "queue", "--timeout", "60"])
    assert args.command == "serve"
    assert args.port == 1234
    assert args.mode == "queue"
    assert args.agent_timeout_s == 60.0


def test_invalid_configuration_exits_with_usage_error(capsys):
    assert main(["--timeout", "-1"]) == 2
    assert "Invalid configuration" in capsys.readouterr().err


def test_status_reports_unreachable_daemon(capsys):
    assert main(["status", "--port", "1"]) == 1
    assert "not reachable" in capsys.readouterr().err
