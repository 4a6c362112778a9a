"""
Tests for YAML settings, environment overrides and the command-line runner.
"""
import pytest
import yaml
from cryptography.fernet import Fernet

from custody_sweep.runner import build_parser, main
from custody_sweep.settings import ENV_OVERRIDES, load_settings


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    for name in list(ENV_OVERRIDES) + ['CUSTODY_SWEEP_CONFIG']:
        monkeypatch.delenv(name, raising=False)


def write_config(tmp_path, data) -> str:
    path = tmp_path / "custody_sweep.yaml"
    path.write_text(yaml.safe_dump(data), encoding='utf-8')
    return str(path)


class TestLoadSettings:
    """Test default, file and environment resolution."""

    def test_defaults_when_file_missing(self, tmp_path):
        """A missing explicit file falls back to defaults."""
        settings = load_settings(str(tmp_path / "absent.yaml"))

        assert settings.monitor.threshold_usd == 10.0
        assert settings.monitor.poll_interval_ms == 900_000
        assert settings.monitor.resweep_policy == 'every_cycle'
        assert settings.sweep.tron_native_reserve_sun == 30_000_000
        assert settings.destinations == {'evm': None, 'utxo': None, 'tron': None}

    def test_yaml_merges_over_defaults(self, tmp_path):
        """Nested sections merge key by key."""
        path = write_config(tmp_path, {
            'monitor': {'threshold_usd': 250.0, 'resweep_policy': 'on_crossing'},
            'destinations': {'evm': '0x000000000000000000000000000000000000dEaD'},
            'prices': {'ttl_seconds': 60},
        })

        settings = load_settings(path)

        assert settings.monitor.threshold_usd == 250.0
        assert settings.monitor.poll_interval_ms == 900_000
        assert settings.monitor.resweep_policy == 'on_crossing'
        assert settings.destinations['evm'] == '0x000000000000000000000000000000000000dEaD'
        assert settings.destinations['tron'] is None
        assert settings.prices.ttl_seconds == 60
        assert settings.monitor_config_defaults()['evm_destination_address'].endswith('dEaD')

    def test_unknown_and_malformed_keys_ignored(self, tmp_path):
        """Unknown keys are dropped and non-mapping sections keep defaults."""
        path = write_config(tmp_path, {'bogus': 1, 'monitor': 'fast', 'endpoints': {'retries': 9}})

        settings = load_settings(path)

        assert settings.monitor.threshold_usd == 10.0
        assert settings.endpoints.probe_timeout_seconds == 10.0

    def test_invalid_yaml_falls_back(self, tmp_path):
        """Unparseable YAML leaves the defaults in place."""
        path = tmp_path / "broken.yaml"
        path.write_text("monitor: [unclosed", encoding='utf-8')

        assert load_settings(str(path)).monitor.threshold_usd == 10.0

    def test_environment_overrides_file(self, tmp_path, monkeypatch):
        """Secrets and paths from the environment win over the file."""
        path = write_config(tmp_path, {'database_path': 'from-file.db'})
        monkeypatch.setenv('CUSTODY_SWEEP_DB', 'from-env.db')
        monkeypatch.setenv('TRON_PRO_API_KEY', 'tron-key')
        monkeypatch.setenv('CUSTODY_SWEEP_WEBHOOK_URL', 'https://hooks.example/x')

        settings = load_settings(path)

        assert settings.database_path == 'from-env.db'
        assert settings.endpoints.tron_api_key == 'tron-key'
        assert settings.notifications.webhook_url == 'https://hooks.example/x'


class TestRunner:
    """Test the command-line entry point."""

    def test_parser_commands(self):
        """Subcommands parse their options."""
        args = build_parser().parse_args(['run', '--interval-ms', '5000', '--threshold-usd', '25'])
        assert (args.command, args.interval_ms, args.threshold_usd) == ('run', 5000, 25.0)

        args = build_parser().parse_args(['onboard', '--name', 'Treasury'])
        assert args.name == 'Treasury'
        assert args.phrase_file is None

    def test_history_on_empty_ledger(self, tmp_path, capsys):
        """The history command runs end to end against a fresh database."""
        path = write_config(tmp_path, {
            'database_path': str(tmp_path / 'custody.db'),
            'seed_encryption_key': Fernet.generate_key().decode(),
        })

        assert main(['--config', path, 'history']) == 0
        assert "No sweep history" in capsys.readouterr().out

    def test_missing_seed_key_fails(self, tmp_path):
        """Without a seed encryption key the runner exits non-zero."""
        path = write_config(tmp_path, {'database_path': str(tmp_path / 'custody.db')})

        assert main(['--config', path, 'history']) == 1
