"""Tests for CLI command parsing."""

import pytest

from cli.models import ConfigCommand, ReceiveCommand, SendCommand, StatusCommand
from cli.parser import ParseError, parse_command, parse_tokens


def test_parse_send():
    assert parse_command('send report.pdf') == SendCommand(file_path='report.pdf')
    assert parse_command('send "my file.txt" abc123') == SendCommand(
        file_path='my file.txt', access_code='abc123'
    )


def test_parse_receive():
    assert parse_command('receive abc123') == ReceiveCommand(access_code='abc123')
    assert parse_command('receive abc123 downloads') == ReceiveCommand(
        access_code='abc123', output_dir='downloads'
    )


def test_parse_status_and_config():
    assert parse_command('status abc123') == StatusCommand(access_code='abc123')
    assert parse_command('config') == ConfigCommand()
    assert parse_command('config signaling relay') == ConfigCommand(key='signaling', value='relay')


def test_parse_tokens_from_argv():
    assert parse_tokens(['receive', 'abc']) == ReceiveCommand(access_code='abc')


@pytest.mark.parametrize("line", [
    '',
    '   ',
    'send',
    'send a b c',
    'receive',
    'status',
    'status a b',
    'config only-key',
    'upload file.txt',
    'send "unterminated',
])
def test_parse_errors(line):
    with pytest.raises(ParseError):
        parse_command(line)
