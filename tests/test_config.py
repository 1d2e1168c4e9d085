import os
import sys
import tempfile
import unittest
from pathlib import Path
from unittest import mock

# Add parent directory to path so we can import our modules
sys.path.append(str(Path(__file__).parent.parent))

from chain_scanner import config as config_module
from chain_scanner.config import ScannerConfig, config_from_mapping, load_config
from chain_scanner.errors import ConfigError


class TestConfig(unittest.TestCase):
    def setUp(self):
        self.tmp = tempfile.TemporaryDirectory()
        self.addCleanup(self.tmp.cleanup)
        env = mock.patch.dict(os.environ, {})
        env.start()
        self.addCleanup(env.stop)
        os.environ.pop(config_module.CONFIG_ENV_VAR, None)
        os.environ.pop(config_module.OSV_BASE_ENV_VAR, None)

    def write(self, content, name="chaintrace.yaml"):
        path = os.path.join(self.tmp.name, name)
        with open(path, "w", encoding="utf-8") as f:
            f.write(content)
        return path

    def test_defaults(self):
        with mock.patch.object(config_module, "default_config_paths", return_value=[]):
            config = load_config()
        self.assertEqual(config, ScannerConfig())
        self.assertEqual(config.timeout, (10.0, 30.0))
        self.assertEqual(config.osv_batch_url, "https://api.osv.dev/v1/querybatch")

    def test_yaml_file(self):
        path = self.write(
            "batch_size: 50\n"
            "scrape_fixed_versions: true\n"
            "severity_threshold: high\n"
            "ignore_vulnerabilities:\n"
            "  - CVE-2021-44228\n"
            "unknown_key: 1\n"
        )
        with self.assertLogs("chain_scanner.config", level="WARNING"):
            config = load_config(path)
        self.assertEqual(config.batch_size, 50)
        self.assertTrue(config.scrape_fixed_versions)
        self.assertEqual(config.ignore_vulnerabilities, ("CVE-2021-44228",))

    def test_env_var_points_at_config(self):
        path = self.write("read_timeout: 5\n")
        os.environ[config_module.CONFIG_ENV_VAR] = path
        self.assertEqual(load_config().read_timeout, 5)

    def test_api_base_override(self):
        os.environ[config_module.OSV_BASE_ENV_VAR] = "http://localhost:8080/v1/"
        with mock.patch.object(config_module, "default_config_paths", return_value=[]):
            config = load_config()
        self.assertEqual(config.osv_api_url, "http://localhost:8080/v1/query")
        self.assertEqual(config.osv_vuln_url, "http://localhost:8080/v1/vulns/")

    def test_invalid_values(self):
        for data in ({"batch_size": 0}, {"read_timeout": "slow"}, {"hydrate_details": "yes"},
                     {"severity_threshold": "severe"}, {"ignore_vulnerabilities": "CVE-1"}):
            with self.subTest(data=data):
                with self.assertRaises(ConfigError):
                    config_from_mapping(data)

    def test_missing_explicit_file(self):
        with self.assertRaises(ConfigError):
            load_config(os.path.join(self.tmp.name, "missing.yaml"))

    def test_malformed_file(self):
        with self.assertRaises(ConfigError):
            load_config(self.write("batch_size: [unclosed\n"))
        with self.assertRaises(ConfigError):
            load_config(self.write("- just\n- a list\n", name="list.yaml"))

    def test_overrides_skip_none(self):
        config = ScannerConfig()
        self.assertIs(config.with_overrides(batch_size=None), config)
        self.assertEqual(config.with_overrides(batch_size=10).batch_size, 10)
        with self.assertRaises(ConfigError):
            config.with_overrides(batch_size=-1)


if __name__ == "__main__":
    unittest.main()
