"""
Configuration loading: section parsing, validation and env substitution.
"""

import sys
import os
sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..', '..', 'src'))

import pytest

from config import HftConfig, IbkrConfig, VenueConfig
from config.config_manager import parse_section
from config.structs import CacheConfig, ContractConfig, WebSocketConfig
from infrastructure.exceptions.system import ConfigurationError

VALID = {
    'environment': 'test',
    'network': {'request_timeout': 5},
    'websocket': {'read_idle_timeout': 30, 'ack_timeout': 2},
    'balance': {'max_pitch_allowed': {'BTC': 0.001}, 'ready_window': 120},
    'cache': {'enabled': True, 'root': '/tmp/series'},
    'venues': {
        'Binance': {
            'base_url': 'https://api.binance.com',
            'websocket_url': 'wss://stream.binance.com:9443',
            'api_key': 'abcdefghijkl',
            'secret_key': 'secret',
        },
    },
    'ibkr': {
        'connection': {'address': '10.0.0.5', 'port': 4002, 'client_id': 7},
        'contracts': [{'symbol': 'AAPL', 'max_price_dist_rel': 0.01}],
        'currencies': ['USD'],
    },
    'logging': {'environment': 'test', 'console': {'min_level': 'ERROR'}},
}


class TestHftConfig:

    def test_sections_parsed(self):
        config = HftConfig.from_dict(VALID)
        assert config.ENVIRONMENT == 'test'
        assert config.get_network_config().request_timeout == 5.0
        assert config.get_websocket_config().ack_timeout == 2.0
        assert config.get_balance_config().max_pitch_allowed == {'BTC': 0.001}
        assert config.get_cache_config().root == '/tmp/series'
        assert config.get_logging_config().console.min_level == 'ERROR'

    def test_venue_lookup_case_insensitive(self):
        config = HftConfig.from_dict(VALID)
        venue = config.get_venue_config('BINANCE')
        assert isinstance(venue, VenueConfig)
        assert venue.name == 'binance'
        assert venue.credentials.has_private_api
        assert venue.credentials.get_preview() == 'abcd...ijkl'
        assert venue.recv_window == 10000

    def test_missing_venue(self):
        config = HftConfig.from_dict(VALID)
        with pytest.raises(ConfigurationError) as exc:
            config.get_venue_config('kraken')
        assert exc.value.setting_name == 'venues.kraken'

    def test_ibkr_section(self):
        ibkr = HftConfig.from_dict(VALID).get_ibkr_config()
        assert isinstance(ibkr, IbkrConfig)
        assert ibkr.connection.port == 4002
        assert ibkr.contracts[0] == ContractConfig(symbol='AAPL', max_price_dist_rel=0.01)
        assert ibkr.time_zone == 'America/New_York'

    def test_defaults_when_sections_missing(self):
        config = HftConfig.from_dict({'environment': 'dev'})
        assert config.get_websocket_config() == WebSocketConfig()
        assert config.get_all_venue_configs() == {}
        with pytest.raises(ConfigurationError):
            config.get_logging_config()

    def test_invalid_environment(self):
        with pytest.raises(ConfigurationError):
            HftConfig.from_dict({'environment': 'qa'})

    def test_invalid_values_rejected(self):
        with pytest.raises(ConfigurationError) as exc:
            HftConfig.from_dict({'websocket': {'reconnect_backoff': 0.5}})
        assert exc.value.setting_name == 'websocket'

        bad_venue = {'venues': {'binance': {'base_url': 'https://x', 'websocket_url': 'https://x'}}}
        with pytest.raises(ConfigurationError):
            HftConfig.from_dict(bad_venue)

    def test_wrong_type_rejected(self):
        with pytest.raises(ConfigurationError):
            parse_section({'enabled': 'maybe'}, CacheConfig, 'cache')


class TestEnvSubstitution:

    @pytest.fixture
    def config(self):
        return HftConfig.from_dict({})

    def test_set_variable(self, config, monkeypatch):
        monkeypatch.setenv('VL_TEST_KEY', 'k1')
        assert config._substitute_env_vars("api_key: ${VL_TEST_KEY}") == "api_key: k1"

    def test_default_value(self, config, monkeypatch):
        monkeypatch.delenv('VL_MISSING', raising=False)
        assert config._substitute_env_vars("port: ${VL_MISSING:7497}") == "port: 7497"

    def test_unset_without_default_is_empty(self, config, monkeypatch):
        monkeypatch.delenv('VL_MISSING', raising=False)
        assert config._substitute_env_vars("key: '${VL_MISSING}'") == "key: ''"


class TestSingleton:

    @pytest.fixture(autouse=True)
    def reset(self):
        HftConfig.reset()
        yield
        HftConfig.reset()

    def test_loads_yaml_from_config_path(self, tmp_path, monkeypatch):
        path = tmp_path / "config.yaml"
        path.write_text(
            "environment: test\n"
            "cache:\n"
            "  root: ${VL_CACHE_ROOT:/var/cache/series}\n"
        )
        monkeypatch.setenv('CONFIG_PATH', str(path))
        monkeypatch.delenv('VL_CACHE_ROOT', raising=False)

        config = HftConfig()
        assert config.get_cache_config().root == '/var/cache/series'
        assert HftConfig() is config

    def test_missing_file(self, tmp_path, monkeypatch):
        monkeypatch.setenv('CONFIG_PATH', str(tmp_path / "absent.yaml"))
        with pytest.raises(ConfigurationError):
            HftConfig()

    def test_malformed_yaml(self, tmp_path, monkeypatch):
        path = tmp_path / "config.yaml"
        path.write_text("cache: [unclosed\n")
        monkeypatch.setenv('CONFIG_PATH', str(path))
        with pytest.raises(ConfigurationError):
            HftConfig()
