"""
Venue clock, request signing, session state and the REST caller.
"""

import sys
import os
sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..', '..', 'src'))

import asyncio
import hashlib
import hmac

import aiohttp
import msgspec
import pytest
from unittest.mock import Mock

from infrastructure.exceptions.exchange import (
    ExchangeBusinessError, ExchangeConnectionRestError, ExchangeDecodeError,
    ExchangeServerError, ExchangeTimeoutError,
)
from infrastructure.exceptions.system import ClockNotInitializedError, NotConfiguredError
from infrastructure.networking.http import HmacSigner, HTTPMethod, RestCaller, SessionState, VenueClock
from infrastructure.networking.http.clock import get_venue_clock, reset_venue_clocks


class Tick(msgspec.Struct):
    serverTime: int


def _clock(local=1_000_000, skew=None):
    clock = VenueClock("test", time_source=lambda: local)
    if skew is not None:
        clock.update_skew(local + skew, local)
    return clock


class TestVenueClock:

    def test_uninitialized_clock_refuses(self):
        with pytest.raises(ClockNotInitializedError):
            _clock().now_ms()

    def test_optional_clock_uses_local_time(self):
        clock = VenueClock("test", required=False, time_source=lambda: 5)
        assert clock.now_ms() == 5

    def test_skew_applied(self):
        assert _clock(skew=-300).now_ms() == 1_000_000 - 300

    def test_jitter_ignored(self):
        clock = _clock(skew=1000)
        assert not clock.update_skew(1_000_000 + 1100, 1_000_000)
        assert clock.skew_ms == 1000
        assert clock.update_skew(1_000_000 + 2000, 1_000_000)
        assert clock.skew_ms == 2000

    @pytest.mark.asyncio
    async def test_sync_uses_round_trip_midpoint(self):
        times = iter([1000, 1200])
        clock = VenueClock("test", time_source=lambda: next(times))

        async def fetch():
            return 5100

        assert await clock.sync(fetch) == 5100 - 1100
        assert clock.is_initialized

    def test_one_clock_per_venue(self):
        reset_venue_clocks()
        assert get_venue_clock("binance") is get_venue_clock("binance")
        assert get_venue_clock("binance") is not get_venue_clock("other")
        reset_venue_clocks()


class TestHmacSigner:

    def test_signature_over_query(self):
        signer = HmacSigner("key", "secret", _clock(skew=0), recv_window=5000)
        headers, query = signer.sign({'symbol': 'BTCUSDT', 'side': 'BUY', 'skip': None, 'test': True})

        assert headers == {'X-MBX-APIKEY': 'key'}
        payload, signature = query.rsplit('&signature=', 1)
        assert payload == "symbol=BTCUSDT&side=BUY&test=true&timestamp=1000000&recvWindow=5000"
        expected = hmac.new(b"secret", payload.encode(), hashlib.sha256).hexdigest()
        assert signature == expected

    def test_missing_keys(self):
        signer = HmacSigner("", "", _clock(skew=0))
        assert not signer.is_configured
        with pytest.raises(NotConfiguredError):
            signer.sign({})
        with pytest.raises(NotConfiguredError):
            signer.auth_headers()

    def test_requires_synchronized_clock(self):
        with pytest.raises(ClockNotInitializedError):
            HmacSigner("key", "secret", _clock()).sign({})


class TestSessionState:

    def test_cookies_merge_and_replace(self):
        state = SessionState()
        state.set_cookies({'a': '1'})
        state.set_cookies({'b': '2'})
        assert state.cookies() == {'a': '1', 'b': '2'}
        state.set_cookies({'c': '3'}, replace=True)
        assert state.cookies() == {'c': '3'}

    def test_status_map(self):
        state = SessionState()
        assert state.status('x-mbx-used-weight-1m') is None
        state.update_status('x-mbx-used-weight-1m', 120)
        assert state.status_snapshot() == {'x-mbx-used-weight-1m': 120}

    def test_pause(self):
        state = SessionState()
        assert state.pause_remaining() == 0
        state.pause_for(30)
        assert 29 < state.pause_remaining() <= 30


@pytest.fixture
def caller(fake_session):
    return RestCaller("test", "https://api.example.com/", session=fake_session,
                      session_state=SessionState(),
                      signer=HmacSigner("key", "secret", _clock(skew=0)))


class TestRestCaller:

    @pytest.mark.asyncio
    async def test_typed_decode(self, caller, fake_session):
        fake_session.add({'serverTime': 123})
        result = await caller.get('/api/v3/time', result_type=Tick)
        assert result == Tick(serverTime=123)
        assert fake_session.requests[0]['url'] == "https://api.example.com/api/v3/time"

    @pytest.mark.asyncio
    async def test_unsigned_params_drop_none(self, caller, fake_session):
        fake_session.add([])
        await caller.get('/api/v3/klines', params={'symbol': 'BTCUSDT', 'endTime': None, 'limit': 2})
        assert fake_session.requests[0]['url'].endswith("/api/v3/klines?symbol=BTCUSDT&limit=2")

    @pytest.mark.asyncio
    async def test_signed_request(self, caller, fake_session):
        fake_session.add({})
        await caller.post('/api/v3/order', params={'symbol': 'BTCUSDT'}, signed=True)
        request = fake_session.requests[0]
        assert request['method'] == 'POST'
        assert '&signature=' in request['url']
        assert request['headers']['X-MBX-APIKEY'] == 'key'

    @pytest.mark.asyncio
    async def test_api_key_only_and_cookies(self, caller, fake_session):
        caller.session_state.set_cookies({'session': 'abc'})
        fake_session.add({'listenKey': 'lk'})
        result = await caller.post('/api/v3/userDataStream', api_key_only=True)
        assert result == {'listenKey': 'lk'}
        assert fake_session.requests[0]['headers'] == {'X-MBX-APIKEY': 'key'}
        assert fake_session.requests[0]['cookies'] == {'session': 'abc'}

    @pytest.mark.asyncio
    async def test_json_body(self, caller, fake_session):
        fake_session.add(b"")
        assert await caller.put('/x', body={'a': 1}) is None
        request = fake_session.requests[0]
        assert request['data'] == b'{"a":1}'
        assert request['headers']['Content-Type'] == 'application/json'

    @pytest.mark.asyncio
    async def test_timeout(self, caller, fake_session):
        fake_session.add_error(asyncio.TimeoutError())
        with pytest.raises(ExchangeTimeoutError) as exc:
            await caller.get('/slow')
        assert exc.value.status_code == 408

    @pytest.mark.asyncio
    async def test_transport_failure(self, caller, fake_session):
        fake_session.add_error(aiohttp.ClientConnectionError("reset"))
        with pytest.raises(ExchangeConnectionRestError):
            await caller.get('/x')

    @pytest.mark.asyncio
    async def test_server_error_without_envelope(self, caller, fake_session):
        fake_session.add(b"<html>bad gateway</html>", status=502)
        with pytest.raises(ExchangeServerError):
            await caller.get('/x')

    @pytest.mark.asyncio
    async def test_decode_error(self, caller, fake_session):
        fake_session.add({'unexpected': True})
        with pytest.raises(ExchangeDecodeError) as exc:
            await caller.get('/api/v3/time', result_type=Tick)
        assert exc.value.body

    @pytest.mark.asyncio
    async def test_mapped_business_error_reaches_callback(self, fake_session):
        callback = Mock()

        def mapper(status, raw):
            payload = msgspec.json.decode(raw)
            return ExchangeBusinessError(status, payload['msg'], api_code=payload['code'])

        caller = RestCaller("test", "https://api.example.com", session=fake_session,
                            session_state=SessionState(), error_mapper=mapper, error_callback=callback)
        fake_session.add({'code': -1121, 'msg': 'Invalid symbol.'}, status=400)
        with pytest.raises(ExchangeBusinessError) as exc:
            await caller.get('/x')
        assert exc.value.api_code == -1121
        callback.assert_called_once_with(exc.value)

    @pytest.mark.asyncio
    async def test_response_processor_sees_every_response(self, fake_session):
        seen = []
        caller = RestCaller("test", "https://api.example.com", session=fake_session,
                            session_state=SessionState(),
                            response_processor=lambda status, headers, raw: seen.append((status, dict(headers))))
        fake_session.add({}, headers={'X-MBX-USED-WEIGHT-1M': '10'})
        await caller.request(HTTPMethod.DELETE, '/x')
        assert seen == [(200, {'X-MBX-USED-WEIGHT-1M': '10'})]

    @pytest.mark.asyncio
    async def test_signed_without_signer(self, fake_session):
        caller = RestCaller("test", "https://api.example.com", session=fake_session,
                            session_state=SessionState())
        with pytest.raises(ValueError):
            await caller.get('/x', signed=True)

    @pytest.mark.asyncio
    async def test_borrowed_session_not_closed(self, caller, fake_session):
        await caller.close()
        assert not fake_session.closed
