"""Tests for log masking and logger setup."""

import logging

from common.logging_config import (
    MASK,
    SensitiveDataFilter,
    configure_logging,
    set_access_code,
    setup_logging,
)


def make_record(msg, args=None):
    return logging.LogRecord('transfer.test', logging.INFO, __file__, 1, msg, args, None)


def test_masks_turn_credentials_in_message():
    record = make_record("ice servers: {'username': 'u', 'credential': 's3cret'}")

    SensitiveDataFilter().filter(record)

    assert 's3cret' not in record.getMessage()
    assert MASK in record.getMessage()


def test_masks_receiver_id_in_args():
    record = make_record("connecting to %s", ('ws://relay/signal/abc?role=receiver&rid=1234-abcd',))

    SensitiveDataFilter().filter(record)

    assert record.getMessage() == f'connecting to ws://relay/signal/abc?role=receiver&rid={MASK}'


def test_leaves_non_string_args_alone():
    record = make_record("chunk %d of %d", (3, 7))

    assert SensitiveDataFilter().filter(record)
    assert record.getMessage() == 'chunk 3 of 7'


def test_setup_logging_is_idempotent():
    first = setup_logging('fileflow-test-tree', log_level='debug')
    second = setup_logging('fileflow-test-tree', log_level='warning')

    assert first is second
    assert len(first.handlers) == 1
    assert first.level == logging.WARNING
    assert first.propagate is False


def test_configure_logging_returns_first_tree():
    logger = configure_logging(('fileflow-a', 'fileflow-b'), log_level='ERROR')

    assert logger.name == 'fileflow-a'
    assert logging.getLogger('fileflow-b').level == logging.ERROR


def test_set_access_code_tags_output():
    logger = setup_logging('fileflow-tagged', log_level='INFO')
    set_access_code(logger, 'xyz789')

    formatted = logger.handlers[0].format(make_record('upload started'))

    assert '[xyz789] - upload started' in formatted
