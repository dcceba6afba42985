"""
单元测试：配置加载

测试覆盖：
- YAML 加载与默认值
- 相对数据目录按配置文件位置解析
- 环境变量覆盖
- 校验失败抛出 ConfigError
"""

from pathlib import Path

import pytest
import yaml

from job_monitor.config import ConfigError, get_config, load_config, reset_config


def write_config(tmp_path, data) -> Path:
    path = tmp_path / "config.yaml"
    path.write_text(yaml.safe_dump(data), encoding="utf-8")
    return path


BASIC = {
    "node_id": "gpu-01",
    "targets": [{"id": "web", "name": "Web", "service": "nginx.service"}],
}


class TestLoadConfig:
    """配置加载测试"""

    def test_defaults(self, tmp_path):
        config = load_config(str(write_config(tmp_path, BASIC)))

        assert config.node_id == "gpu-01"
        assert config.node_name == "gpu-01"
        assert config.interval_minutes == 5
        assert config.peer_refresh_seconds == 60
        assert config.connectivity.enabled is False
        assert config.connectivity.target == "1.1.1.1"
        assert config.api.node_token == ""
        assert config.data_directory == ".dist/data"
        assert config.history_path.name == "status_history.json"

    def test_relative_data_directory(self, tmp_path):
        """测试：相对数据目录按配置文件所在目录解析"""
        config = load_config(str(write_config(tmp_path, {**BASIC, "data_directory": "state"})))

        assert Path(config.data_directory) == (tmp_path / "state").resolve()
        assert config.history_path == (tmp_path / "state" / "status_history.json").resolve()

    def test_non_positive_interval_reset(self, tmp_path):
        config = load_config(str(write_config(tmp_path, {**BASIC, "interval_minutes": 0})))

        assert config.interval_minutes == 5

    def test_peer_refresh_floor(self, tmp_path):
        config = load_config(str(write_config(tmp_path, {**BASIC, "peer_refresh_seconds": 5})))

        assert config.peer_refresh == 15

    def test_enabled_peers(self, tmp_path):
        data = {**BASIC, "peers": [
            {"id": "a", "base_url": "http://a"},
            {"id": "b", "enabled": False},
        ]}

        config = load_config(str(write_config(tmp_path, data)))

        assert [p.id for p in config.enabled_peers()] == ["a"]

    def test_missing_file_uses_example_target(self, tmp_path):
        config = load_config(str(tmp_path / "missing.yaml"))

        assert [t.id for t in config.targets] == ["example"]

    def test_env_overrides(self, tmp_path, monkeypatch):
        path = write_config(tmp_path, BASIC)
        monkeypatch.setenv("JOB_MONITOR_CONFIG_PATH", str(path))
        monkeypatch.setenv("JOB_MONITOR_PORT", "9200")
        monkeypatch.setenv("JOB_MONITOR_HOST", "127.0.0.1")

        config = load_config()

        assert config.node_id == "gpu-01"
        assert config.api.port == 9200
        assert config.api.host == "127.0.0.1"

    def test_get_config_is_cached(self, tmp_path, monkeypatch):
        monkeypatch.setenv("JOB_MONITOR_CONFIG_PATH", str(write_config(tmp_path, BASIC)))
        reset_config()
        try:
            assert get_config() is get_config()
        finally:
            reset_config()


class TestConfigErrors:
    """配置校验测试"""

    @pytest.mark.parametrize("data, message", [
        ({"targets": []}, "at least one target"),
        ({"targets": [{"id": "", "service": "x"}]}, "must define an id"),
        ({"targets": [{"id": "web"}]}, "service or url"),
        ({"targets": [{"id": "a", "url": "http://a"}, {"id": "a", "url": "http://b"}]}, "duplicate"),
        ({**BASIC, "peers": [{"id": "p"}]}, "base_url"),
        ({**BASIC, "peers": [{"base_url": "http://p"}]}, "missing id"),
        ({**BASIC, "interval_minutes": "often"}, "parse config"),
    ])
    def test_invalid(self, tmp_path, data, message):
        with pytest.raises(ConfigError, match=message):
            load_config(str(write_config(tmp_path, data)))

    def test_not_a_mapping(self, tmp_path):
        path = tmp_path / "config.yaml"
        path.write_text("- just\n- a list\n")

        with pytest.raises(ConfigError):
            load_config(str(path))
