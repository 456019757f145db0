import types
import unittest.mock as mock
from pathlib import Path

import pytest

import deka
import deka.cfgfile
import deka.deka
import deka.main as main
from deka.dtypes import BackoffConfig, Config


@pytest.fixture
def param(tmp_path) -> types.SimpleNamespace:
    """Parsed command line for `deka apply -f manifests.yaml`."""
    fname_kubeconfig = tmp_path / "kubeconfig"
    fname_kubeconfig.write_text("")

    return types.SimpleNamespace(
        parser="apply",
        verbosity=0,
        debug=False,
        output="plain",
        configfile="",
        namespace=None,
        parallelism=None,
        kubeconfig=str(fname_kubeconfig),
        kubecontext=None,
        filename="manifests.yaml",
        field_manager=None,
        timeout=None,
    )


class TestMain:
    def test_parse_commandline_args(self):
        """Parse the `apply` command and its defaults."""
        param = main.parse_commandline_args(["apply", "-f", "foo.yaml"])
        assert param.parser == "apply"
        assert param.filename == "foo.yaml"
        assert param.verbosity == 0
        assert param.debug is False
        assert param.output == "plain"
        assert param.configfile == ""
        assert param.namespace is None
        assert param.parallelism is None
        assert param.kubeconfig is None
        assert param.kubecontext is None
        assert param.field_manager is None
        assert param.timeout is None

        param = main.parse_commandline_args([
            "apply", "-f", "-", "-vvv", "--debug", "-n", "ns", "-p", "3",
            "--kubeconfig", "kubeconf", "--kubecontext", "ctx",
            "--field-manager", "mgr", "--timeout", "60", "-c", "deka.yaml",
            "-o", "json",
        ])
        assert param.output == "json"
        assert param.filename == "-"
        assert param.verbosity == 3
        assert param.debug is True
        assert param.namespace == "ns"
        assert param.parallelism == 3
        assert (param.kubeconfig, param.kubecontext) == ("kubeconf", "ctx")
        assert (param.field_manager, param.timeout) == ("mgr", 60)
        assert param.configfile == "deka.yaml"

        assert main.parse_commandline_args(["version"]).parser == "version"

    def test_parse_commandline_args_invalid(self):
        """Argparse exits on invalid command lines."""
        invalid = (
            [], ["foo"], ["apply", "--parallelism", "abc"], ["apply", "-o", "xml"],
        )
        for args in invalid:
            with pytest.raises(SystemExit):
                main.parse_commandline_args(args)

    def test_compile_config_basic(self, param, tmp_path):
        """Compile the default configuration from the command line."""
        cfg, err = main.compile_config(param)
        assert not err
        assert cfg == Config(
            filename=Path("manifests.yaml"),
            kubeconfig=tmp_path / "kubeconfig",
        )

        # Explicit command line arguments.
        param.namespace, param.parallelism = "ns", 0
        param.field_manager, param.timeout = "mgr", 0
        param.kubecontext = "ctx"
        cfg, err = main.compile_config(param)
        assert not err
        assert (cfg.namespace, cfg.parallelism) == ("ns", 0)
        assert (cfg.field_manager, cfg.timeout) == ("mgr", 0)
        assert cfg.kubecontext == "ctx"

    def test_compile_config_file(self, param, tmp_path):
        """Command line arguments override the values in the config file."""
        fname = tmp_path / "deka.yaml"
        fname.write_text("\n".join([
            "filename: from-file.yaml",
            "namespace: file-ns",
            "timeout: 10",
            "backoff: {initial_interval: 2, max_interval: 40}",
        ]))
        param.configfile = str(fname)
        param.filename = None
        param.namespace = "cli-ns"

        cfg, err = main.compile_config(param)
        assert not err
        assert cfg.filename == tmp_path / "from-file.yaml"
        assert cfg.namespace == "cli-ns"
        assert cfg.timeout == 10
        assert cfg.backoff == BackoffConfig(initial_interval=2, max_interval=40)

        # Corrupt configuration file.
        fname.write_text("timeout: [")
        assert main.compile_config(param) == (Config(), True)

    def test_compile_config_err(self, param, tmp_path):
        """Reject invalid command line values and missing files."""
        param.parallelism = -1
        assert main.compile_config(param) == (Config(), True)
        param.parallelism = None

        param.field_manager = ""
        assert main.compile_config(param) == (Config(), True)
        param.field_manager = None

        param.filename = None
        assert main.compile_config(param) == (Config(), True)
        param.filename = "manifests.yaml"

        param.kubeconfig = str(tmp_path / "does-not-exist")
        assert main.compile_config(param) == (Config(), True)

        # Auto-detect the credentials if the user did not specify them.
        param.kubeconfig = None
        cfg, err = main.compile_config(param)
        assert not err and cfg.kubeconfig is None

    @mock.patch.object(main.deka.deka, "apply_manifests")
    @mock.patch.object(main, "parse_commandline_args")
    def test_main_apply(self, m_cmd, m_apply, param):
        """Run the `apply` command and translate its error into an exit code."""
        m_cmd.return_value = param

        m_apply.return_value = False
        assert main.main() == 0
        cfg, _ = main.compile_config(param)
        m_apply.assert_called_once_with(cfg)

        m_apply.return_value = True
        assert main.main() == 1

    @mock.patch.object(main.deka.deka, "setup_logging")
    @mock.patch.object(main.deka.deka, "apply_manifests")
    @mock.patch.object(main, "parse_commandline_args")
    def test_main_output(self, m_cmd, m_apply, m_log, param):
        """Configure the log format requested on the command line."""
        param.verbosity, param.debug, param.output = 2, True, "logfmt"
        m_cmd.return_value = param
        m_apply.return_value = False

        assert main.main() == 0
        m_log.assert_called_once_with(2, True, "logfmt")

    @mock.patch.object(main.deka.deka, "apply_manifests")
    @mock.patch.object(main, "parse_commandline_args")
    def test_main_err(self, m_cmd, m_apply, param):
        """Do not contact the cluster with an invalid configuration."""
        param.filename = None
        m_cmd.return_value = param
        assert main.main() == 1
        assert not m_apply.called

        param.filename = "manifests.yaml"
        param.parser = "foo"
        assert main.main() == 1
        assert not m_apply.called

    @mock.patch.object(main, "parse_commandline_args")
    def test_main_version(self, m_cmd, param, capsys):
        param.parser = "version"
        m_cmd.return_value = param
        assert main.main() == 0
        assert capsys.readouterr().out.strip() == deka.__version__
