import hashlib

from click.testing import CliRunner

from swarm_discovery.cli import cli, topic_key


def test_topic_key_accepts_hex_or_text():
    raw = bytes(range(32))
    assert topic_key(raw.hex()) == raw
    assert topic_key('my-app') == hashlib.sha256(b'my-app').digest()
    # 64 characters that are not hex are hashed too
    assert topic_key('z' * 64) == hashlib.sha256(b'z' * 64).digest()


def test_commands_listed():
    result = CliRunner().invoke(cli, ['--help'])
    assert result.exit_code == 0
    for command in ('announce', 'lookup', 'ping', 'holepunchable'):
        assert command in result.output


def test_invalid_bootstrap_rejected():
    result = CliRunner().invoke(cli, ['--bootstrap', 'nope', 'ping'])
    assert result.exit_code != 0
    assert 'host:port' in result.output
