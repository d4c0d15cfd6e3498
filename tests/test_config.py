"""Tests for configuration loading and validation."""

from pathlib import Path

import pytest
import yaml

from crawlkeep.utils.config import (
    ConfigValidationError,
    DEFAULT_USER_AGENT,
    default_settings,
    load_config,
    merge_settings,
    write_config,
)


class TestMergeSettings:
    """Tests for layered settings merge."""

    def test_nested_sections_merge_key_by_key(self):
        """Overriding one nested key keeps its siblings."""
        merged = merge_settings(default_settings(), {'session': {'workers': 4}})
        assert merged['session']['workers'] == 4
        assert merged['session']['snapshot_every'] == 10

    def test_base_is_not_mutated(self):
        base = default_settings()
        merge_settings(base, {'robots': {'check': False}})
        assert base['robots']['check'] is True


class TestLoadConfig:
    """Tests for load_config."""

    def test_defaults(self, tmp_path):
        config = load_config(base_dir=str(tmp_path))
        assert config.project == 'my-project'
        assert config.robots.check is True
        assert config.session.use_browser is False
        assert config.session.workers == 1
        assert config.urls == ()

    def test_derived_paths(self, tmp_path):
        """Project files live below base_dir/project."""
        config = load_config(base_dir=str(tmp_path), project='shop')
        project_dir = Path(tmp_path) / 'shop'
        assert config.project_dir == project_dir
        assert config.db_file == project_dir / 'results.sqlite'
        assert config.snapshot_dir == project_dir / 'snapshots'
        assert config.progress_dir == project_dir / 'progress'
        assert config.stop_file == project_dir / 'shop.stop'
        assert config.log_file == project_dir / 'logs' / 'crawler.log'

    def test_yaml_file_then_overrides(self, tmp_path):
        """Keyword overrides win over the file, the file over defaults."""
        config_file = tmp_path / 'config.yaml'
        config_file.write_text(yaml.safe_dump({
            'project': 'from-file',
            'base_dir': str(tmp_path),
            'urls': ['https://example.com/'],
            'session': {'workers': 3, 'snapshot_every': 5},
        }))

        config = load_config(str(config_file), session={'workers': 6})
        assert config.project == 'from-file'
        assert config.urls == ('https://example.com/',)
        assert config.session.workers == 6
        assert config.session.snapshot_every == 5

    def test_missing_file(self, tmp_path):
        with pytest.raises(FileNotFoundError):
            load_config(str(tmp_path / 'nope.yaml'))

    def test_user_agent_is_propagated(self, tmp_path):
        """The session user agent reaches the HTTP headers and browser args."""
        config = load_config(base_dir=str(tmp_path))
        assert config.session.headers['User-Agent'] == DEFAULT_USER_AGENT
        assert f"--user-agent={DEFAULT_USER_AGENT}" in config.session.args

    def test_explicit_user_agent_header_is_kept(self, tmp_path):
        config = load_config(base_dir=str(tmp_path), session={'headers': {'user-agent': 'bot/1.0'}})
        assert config.session.headers == {'user-agent': 'bot/1.0'}

    def test_log_level_is_case_insensitive(self, tmp_path):
        config = load_config(base_dir=str(tmp_path), logging={'level': 'debug'})
        assert config.logging.level == 'DEBUG'

    def test_config_is_frozen(self, tmp_path):
        config = load_config(base_dir=str(tmp_path))
        with pytest.raises(AttributeError):
            config.project = 'other'


class TestValidation:
    """Each invalid field fails with ConfigValidationError."""

    @pytest.mark.parametrize("overrides", [
        {'session': {'workers': 0}},
        {'session': {'snapshot_every': 'ten'}},
        {'session': {'port': 70000}},
        {'session': {'browser': 'firefox'}},
        {'session': {'timeout': 0}},
        {'robots': {'check': 'yes'}},
        {'logging': {'level': 'LOUD'}},
        {'urls': 'https://example.com'},
        {'project': ''},
    ])
    def test_invalid_values(self, tmp_path, overrides):
        with pytest.raises(ConfigValidationError):
            load_config(base_dir=str(tmp_path), **overrides)

    def test_unknown_key(self, tmp_path):
        with pytest.raises(ConfigValidationError, match="not a valid parameter"):
            load_config(base_dir=str(tmp_path), session={'wrokers': 2})

    def test_base_dir_must_exist(self, tmp_path):
        with pytest.raises(ConfigValidationError, match="not an existing directory"):
            load_config(base_dir=str(tmp_path / 'missing'))

    def test_is_a_value_error(self):
        assert issubclass(ConfigValidationError, ValueError)


class TestWriteConfig:
    """Tests for exporting the effective configuration."""

    def test_written_config_loads_back(self, tmp_path):
        config = load_config(base_dir=str(tmp_path), project='roundtrip',
                             urls=['https://example.com/a'])
        target = tmp_path / 'effective.yaml'
        write_config(config, str(target))

        assert load_config(str(target)) == config
