import os

import pytest

from swarm_discovery.events import Countdown, EventEmitter
from swarm_discovery.peer import DEFAULT_DOMAIN, Endpoint, domain_for


# ---------------------------------------------------------------------------
# Domain naming
# ---------------------------------------------------------------------------

def test_domain_uses_first_20_bytes():
    key = bytes(range(32))
    assert domain_for(key) == bytes(range(20)).hex() + '.' + DEFAULT_DOMAIN
    assert domain_for(key, 'example.local').endswith('.example.local')


def test_keys_sharing_prefix_share_domain():
    prefix = os.urandom(20)
    assert domain_for(prefix + os.urandom(12)) == domain_for(prefix + os.urandom(12))


def test_domain_label_fits_dns():
    label = domain_for(os.urandom(32)).split('.')[0]
    assert len(label) == 40


def test_endpoint_parse():
    assert Endpoint.parse('127.0.0.1:49737') == Endpoint('127.0.0.1', 49737)
    assert str(Endpoint('127.0.0.1', 49737)) == '127.0.0.1:49737'
    with pytest.raises(ValueError):
        Endpoint.parse('49737')
    with pytest.raises(ValueError):
        Endpoint.parse('localhost:http')


# ---------------------------------------------------------------------------
# Events
# ---------------------------------------------------------------------------

def test_listener_errors_do_not_stop_delivery(caplog):
    emitter = EventEmitter()
    seen = []

    def broken(value):
        raise RuntimeError('listener failed')

    emitter.on('peer', broken)
    emitter.on('peer', seen.append)

    assert emitter.emit('peer', 1) is True
    assert seen == [1]
    assert 'listener failed' in caplog.text


def test_once_and_off():
    emitter = EventEmitter()
    seen = []
    emitter.once('close', lambda: seen.append('once'))
    emitter.emit('close')
    emitter.emit('close')
    assert seen == ['once']

    emitter.once('close', seen.append)
    emitter.off('close', seen.append)
    assert emitter.listener_count('close') == 0
    assert emitter.emit('close') is False


def test_countdown_waits_for_release():
    fired = []
    countdown = Countdown(lambda: fired.append(True))
    countdown.add(2)
    countdown.done()
    countdown.done()
    assert fired == []

    countdown.release()
    assert fired == [True]

    # Fires only once
    countdown.done()
    assert fired == [True]


def test_countdown_with_nothing_pending():
    fired = []
    countdown = Countdown(lambda: fired.append(True))
    countdown.release()
    assert fired == [True]
