import json
import logging
import sys

from rankwarden.utils.logger import (JSONFormatter, LoggerAdapter, get_logger,
                                     setup_logging)


def test_get_logger_names_and_context():
    plain = get_logger('locks')
    assert isinstance(plain, logging.Logger)
    assert plain.name == 'RankWarden.locks'

    scoped = get_logger('transitions', employee_id='emp-1')
    assert isinstance(scoped, LoggerAdapter)
    msg, kwargs = scoped.process('promoted', {'extra': {'team': 'Silver'}})
    assert kwargs['extra'] == {'team': 'Silver', 'employee_id': 'emp-1'}


def test_json_formatter_includes_extra_fields():
    record = logging.makeLogRecord({
        'name': 'RankWarden.transitions',
        'levelno': logging.INFO,
        'levelname': 'INFO',
        'msg': 'Promotion of %s',
        'args': ('emp-1',),
        'employee_id': 'emp-1',
    })

    data = json.loads(JSONFormatter().format(record))

    assert data['message'] == 'Promotion of emp-1'
    assert data['level'] == 'INFO'
    assert data['extra'] == {'employee_id': 'emp-1'}


def test_setup_logging_writes_files(tmp_path):
    root = logging.getLogger()
    saved = root.handlers[:]
    saved_level = root.level
    saved_hook = sys.excepthook
    try:
        setup_logging('DEBUG', json_logging=True, log_dir=tmp_path)
        logging.getLogger('RankWarden.test').error('badge pool exhausted')
        logging.getLogger('RankWarden.transitions').info('Promotion of emp-1')
        for handler in root.handlers:
            handler.flush()
    finally:
        for handler in root.handlers:
            handler.close()
        root.handlers[:] = saved
        root.setLevel(saved_level)
        sys.excepthook = saved_hook

    assert 'badge pool exhausted' in (tmp_path / 'error.log').read_text(encoding='utf-8')
    assert (tmp_path / 'rankwarden.log').exists()
    audit = (tmp_path / 'rank_audit.log').read_text(encoding='utf-8')
    assert 'Promotion of emp-1' in audit
    assert 'badge pool exhausted' not in audit
