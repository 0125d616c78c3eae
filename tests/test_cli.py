import json

import pytest

from paddle_tracker.cli import build_parser, config_from_args, main


def test_run_overrides():
    args = build_parser().parse_args([
        'run', '--device-name', 'Paddle 2', '--device-name', 'Paddle 3',
        '--scan-timeout', '10', '--retries', '1', '--packet-timeout', '2',
    ])
    config = config_from_args(args)

    assert config.link.device_names == ('Paddle 2', 'Paddle 3')
    assert config.link.scan_timeout == 10.0
    assert config.link.max_scan_retries == 1
    assert config.link.packet_timeout == 2.0


def test_run_defaults():
    config = config_from_args(build_parser().parse_args(['run']))
    assert config.link.device_names == ('Paddle 1', 'Arduino')


def test_config_file_then_flags(tmp_path):
    path = tmp_path / "cfg.json"
    path.write_text(json.dumps({'link': {'max_scan_retries': 5, 'packet_timeout': 8}}))

    args = build_parser().parse_args(['run', '--config', str(path), '--retries', '2'])
    config = config_from_args(args)

    assert config.link.max_scan_retries == 2
    assert config.link.packet_timeout == 8


def test_command_required():
    with pytest.raises(SystemExit):
        build_parser().parse_args([])


def test_bad_config_exits_with_error(tmp_path):
    path = tmp_path / "cfg.json"
    path.write_text(json.dumps({'bogus': {}}))

    assert main(['run', '--config', str(path)]) == 2


def test_degenerate_position_exits_with_error(tmp_path):
    path = tmp_path / "cfg.json"
    path.write_text(json.dumps({'position': {'forehand_euler': [10, 20, 30],
                                             'backhand_euler': [10, 20, 30]}}))

    assert main(['run', '--config', str(path)]) == 2


def test_runtime_value_error_propagates(monkeypatch):
    async def failing_run(config, duration):
        raise ValueError("bad frame")

    monkeypatch.setattr('paddle_tracker.cli.run_tracker', failing_run)

    with pytest.raises(ValueError, match="bad frame"):
        main(['run'])
