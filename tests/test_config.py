"""Tests for configuration loading."""

import json
import os
from pathlib import Path

import pytest

from fragxfer.config import EXAMPLE_CONFIG, Config, load_config
from fragxfer.errors import ConfigError


@pytest.fixture(autouse=True)
def clean_env(monkeypatch, tmp_path):
    """Run each test in an empty directory without FRAGXFER_* variables."""
    monkeypatch.chdir(tmp_path)
    for key in list(os.environ):
        if key.startswith('FRAGXFER_'):
            monkeypatch.delenv(key)


def write_config(path: Path, data: dict) -> Path:
    path.write_text(json.dumps(data))
    return path


class TestDefaults:

    def test_defaults(self):
        config = load_config()

        assert config.storage.backend == 'local'
        assert config.file.fragment_size == 4 * 1024 * 1024
        assert config.file.number_of_parts == 10
        assert config.upload.max_retries == 3
        assert config.upload.batch_size == 5
        assert config.upload.timeout_seconds == 1800
        assert config.download.verify_proof is True
        assert config.download.parallelism == 1
        assert config.file.spool_to_disk is True
        assert config.log_level == 'INFO'

    def test_immutable(self):
        config = Config()
        with pytest.raises(AttributeError):
            config.upload = None

    def test_example_config_is_valid(self):
        config = Config.from_dict(json.loads(EXAMPLE_CONFIG))
        assert config.file.generate_test_file is True
        assert isinstance(config.upload.timeout_minutes, float)


class TestFile:

    def test_load_file(self, tmp_path):
        path = write_config(tmp_path / "config.json", {
            'file': {'fragment_size': 300000, 'input_file': 'data/in.bin'},
            'upload': {'max_retries': 5, 'attempt_timeout_seconds': 2.5},
            'log_level': 'debug',
        })

        config = load_config(path)

        assert config.file.fragment_size == 300000
        assert config.file.input_file == Path('data/in.bin')
        assert config.file.number_of_parts == 10
        assert config.upload.max_retries == 5
        assert config.upload.attempt_timeout_seconds == 2.5
        assert config.log_level == 'DEBUG'

    def test_save_round_trip(self, tmp_path):
        original = Config.from_dict({'upload': {'batch_size': 2}})
        original.save(tmp_path / "saved.json")

        assert Config.from_file(tmp_path / "saved.json") == original

    def test_missing_file(self, tmp_path):
        with pytest.raises(ConfigError):
            load_config(tmp_path / "absent.json")

    def test_invalid_json(self, tmp_path):
        path = tmp_path / "broken.json"
        path.write_text("{not json")
        with pytest.raises(ConfigError):
            load_config(path)

    def test_unknown_section(self, tmp_path):
        path = write_config(tmp_path / "c.json", {'uploads': {}})
        with pytest.raises(ConfigError, match="uploads"):
            load_config(path)

    def test_unknown_key(self, tmp_path):
        path = write_config(tmp_path / "c.json", {'upload': {'retries': 3}})
        with pytest.raises(ConfigError, match="retries"):
            load_config(path)


class TestEnvironment:

    def test_env_overrides_file(self, tmp_path, monkeypatch):
        path = write_config(tmp_path / "c.json", {'upload': {'max_retries': 5}})
        monkeypatch.setenv('FRAGXFER_UPLOAD_MAX_RETRIES', '7')
        monkeypatch.setenv('FRAGXFER_DOWNLOAD_VERIFY_PROOF', 'false')
        monkeypatch.setenv('FRAGXFER_STORAGE_CAPACITY', '1024')
        monkeypatch.setenv('FRAGXFER_LOG_LEVEL', 'warning')

        config = load_config(path)

        assert config.upload.max_retries == 7
        assert config.download.verify_proof is False
        assert config.storage.capacity == 1024
        assert config.log_level == 'WARNING'

    def test_from_env(self, monkeypatch):
        monkeypatch.setenv('FRAGXFER_FILE_OUTPUT_DIRECTORY', '/tmp/out')
        assert Config.from_env().file.output_directory == Path('/tmp/out')

    def test_bad_env_value(self, monkeypatch):
        monkeypatch.setenv('FRAGXFER_UPLOAD_BATCH_SIZE', 'five')
        with pytest.raises(ConfigError):
            load_config()


class TestValidation:

    @pytest.mark.parametrize("section,values", [
        ('file', {'fragment_size': 0}),
        ('file', {'number_of_parts': -1}),
        ('upload', {'max_retries': -1}),
        ('upload', {'batch_size': 0}),
        ('upload', {'timeout_minutes': 0}),
        ('upload', {'finality_mode': 'eventually'}),
        ('upload', {'batch_size': 2.5}),
        ('upload', {'concurrent': 'sometimes'}),
        ('download', {'parallelism': 0}),
        ('storage', {'backend': 's3'}),
        ('storage', {'port': 70000}),
    ])
    def test_invalid_values(self, section, values):
        with pytest.raises(ConfigError):
            Config.from_dict({section: values})

    def test_null_not_allowed_for_required(self):
        with pytest.raises(ConfigError):
            Config.from_dict({'file': {'fragment_size': None}})

    def test_null_allowed_for_optional(self):
        config = Config.from_dict({'upload': {'attempt_timeout_seconds': None}})
        assert config.upload.attempt_timeout_seconds is None

    def test_invalid_log_level(self):
        with pytest.raises(ConfigError):
            Config.from_dict({'log_level': 'chatty'})

    def test_zero_retries_accepted(self):
        assert Config.from_dict({'upload': {'max_retries': 0}}).upload.max_retries == 0
