"""
针对完整运行与命令行入口的测试。
"""

from unittest.mock import patch

import pytest
from click.testing import CliRunner
from pydantic import ValidationError

from src.kubessl import run as cli
from src.kubessl.certs import core
from src.kubessl.certs.schemas import CertState, IssueSettings, ReconcilePolicy
from src.kubessl.config import Config, load_config
from src.kubessl.errors import InvalidTopologyInput, WriteError
from src.kubessl.services import ReconciliationRun, resolve_location
from src.kubessl.storage import FileStorage
from src.kubessl.topology.schemas import ClusterInput

CLUSTER = ClusterInput(
    apisans="kapi.example.org/10.0.0.1",
    masters="m1.example.org/10.1.0.1",
    workers="w1.example.org/10.2.0.1",
)

CLI_ARGS = [
    "kubecerts",
    "--apisans", "kapi.example.org/10.0.0.1",
    "--masters", "m1.example.org/10.1.0.1",
    "--workers", "w1.example.org/10.2.0.1",
]


@pytest.fixture(autouse=True)
def _isolate_env(tmp_path, monkeypatch):
    """隔离工作目录与环境变量，避免读取到本机的 .env / config.json"""
    monkeypatch.chdir(tmp_path)
    for name in ("CONFIG_FILE", "KUBESSL_DESTINATION", "KUBESSL_SOURCE", "KUBESSL_OVERWRITE", "KUBESSL_FORCE_REGEN"):
        monkeypatch.delenv(name, raising=False)
    monkeypatch.setenv("KUBESSL_RSA_KEY_SIZE", "1024")


def _run(root, cluster=CLUSTER, policy=ReconcilePolicy()):
    storage = FileStorage(root)
    return ReconciliationRun(cluster, storage, storage, policy, IssueSettings(rsa_key_size=1024)).execute()


def test_end_to_end_scenario(tmp_path):
    root = tmp_path / "pki"
    result = _run(root)

    assert result.changed is True
    written = {o.path for o in result.certificates if o.state is CertState.REGENERATED}
    for path in [
        "/etc/kubernetes/pki/ca",
        "/etc/kubernetes/pki/apiserver",
        "/etc/kubernetes/pki/kubelet",
        "/etc/kubernetes/pki/kube-proxy",
    ]:
        assert path in written
    assert result.keys[0].state is CertState.REGENERATED

    storage = FileStorage(root)
    cert, _ = core.load_cert_and_key_from_pem(
        storage.read("nodes/m1.example.org/etc/kubernetes/pki/apiserver.crt"),
        storage.read("nodes/m1.example.org/etc/kubernetes/pki/apiserver.key"),
    )
    sans = set(core.get_all_sans(cert))
    assert {
        "kapi.example.org",
        "10.0.0.1",
        "m1.example.org",
        "10.1.0.1",
        "kubernetes",
        "kubernetes.default",
        "127.0.0.1",
        "localhost",
    } <= sans

    second = _run(root)
    assert second.changed is False
    assert all(o.state is CertState.KEPT for o in second.certificates + second.keys)


def test_invalid_topology_aborts_before_crypto(tmp_path):
    root = tmp_path / "pki"
    bad = CLUSTER.model_copy(update={"workers": "w1/a/b"})
    with pytest.raises(InvalidTopologyInput):
        _run(root, cluster=bad)
    assert not root.exists()


def test_from_config_uses_destination_as_source(tmp_path):
    cfg = Config(destination="out")
    run = ReconciliationRun.from_config(CLUSTER, cfg)
    assert run.reader is run.writer
    assert run.writer.root_path == tmp_path / "out"
    assert run.settings.rsa_key_size == 1024

    cfg = Config(destination="out", source="in", overwrite=False)
    run = ReconciliationRun.from_config(CLUSTER, cfg)
    assert run.reader.root_path == tmp_path / "in"
    assert run.policy.overwrite is False


def test_resolve_location(tmp_path):
    assert resolve_location("file:///srv/pki") == "file:///srv/pki"
    assert resolve_location("/abs/path") == "/abs/path"
    assert resolve_location("rel", cwd="/base") == "/base/rel"


def test_config_sources(tmp_path, monkeypatch):
    """命令行覆盖项 > 环境变量 > config.json"""
    (tmp_path / "config.json").write_text('{"cluster_domain": "from.json", "overwrite": false}')
    monkeypatch.setenv("KUBESSL_CLUSTER_DOMAIN", "from.env")

    cfg = load_config(cluster_domain=None)
    assert cfg.cluster_domain == "from.env"
    assert cfg.overwrite is False

    cfg = load_config(cluster_domain="cli.local", overwrite=True)
    assert cfg.cluster_domain == "cli.local"
    assert cfg.overwrite is True


def test_cli_first_and_second_run(tmp_path):
    runner = CliRunner()
    result = runner.invoke(cli.main, ["--dst", "outputs"] + CLI_ARGS)
    assert result.exit_code == 0, result.output
    assert "CERTS =>>" in result.output
    assert "KEYS =>>" in result.output
    assert "CRT WRITTEN: [" in result.output
    assert "KEY WRITTEN: [" in result.output
    assert "GLOBAL_CHANGED: TRUE" in result.output
    assert (tmp_path / "outputs/global/etc/kubernetes/pki/sa.pub").exists()

    result = runner.invoke(cli.main, ["--dst", "outputs"] + CLI_ARGS)
    assert result.exit_code == 0, result.output
    assert "CRT WRITTEN" not in result.output
    assert "CRT OK     : [" in result.output
    assert "GLOBAL_CHANGED: FALSE" in result.output


def test_cli_policy_violation_exit_code(tmp_path):
    runner = CliRunner()
    result = runner.invoke(cli.main, ["--dst", "outputs"] + CLI_ARGS + ["--no-overwrite"])
    assert result.exit_code == cli.EXIT_POLICY
    assert "GLOBAL_CHANGED" not in result.output
    assert not (tmp_path / "outputs").exists()


def test_cli_invalid_topology_exit_code(tmp_path):
    runner = CliRunner()
    result = runner.invoke(cli.main, ["--dst", "outputs", "kubecerts", "--apisans", "kapi", "--masters", "m1"])
    assert result.exit_code == cli.EXIT_INPUT
    assert not (tmp_path / "outputs").exists()


def test_cli_unknown_storage_scheme(tmp_path):
    runner = CliRunner()
    result = runner.invoke(cli.main, ["--dst", "s3://bucket/pki"] + CLI_ARGS)
    assert result.exit_code == cli.EXIT_INPUT


@pytest.mark.parametrize(
    "workers",
    ["wörker.example.org", "w" * 60 + ".example.org", ".."],
)
def test_cli_rejects_unusable_names_before_writing(tmp_path, workers):
    """证书库无法编码的名称在生成前即被拒绝，不留下任何文件"""
    args = ["--dst", "outputs", "kubecerts", "--apisans", "kapi.example.org", "--masters", "m1", "--workers", workers]
    result = CliRunner().invoke(cli.main, args)
    assert result.exit_code == cli.EXIT_INPUT
    assert "CERTS =>>" not in result.output
    assert not (tmp_path / "outputs").exists()


def test_cli_write_failure_exit_code(tmp_path):
    """重新生成时写入失败立即终止，退出码为 1"""
    with patch.object(FileStorage, "write", side_effect=WriteError("磁盘已满")) as write:
        result = CliRunner().invoke(cli.main, ["--dst", "outputs"] + CLI_ARGS)
    assert result.exit_code == cli.EXIT_FAILURE
    assert write.call_count == 1
    assert "CRT WRITTEN" not in result.output
    assert "KEYS =>>" not in result.output
    assert "GLOBAL_CHANGED" not in result.output


@pytest.mark.parametrize("minimum, validity", [(10, 5), (10, 10), (-1, 3650)])
def test_config_rejects_unreachable_validity_window(minimum, validity):
    with pytest.raises(ValidationError):
        Config(min_remaining_validity_days=minimum, certificate_validity_days=validity)


def test_cli_invalid_validity_window_exit_code(monkeypatch):
    monkeypatch.setenv("KUBESSL_MIN_REMAINING_VALIDITY_DAYS", "4000")
    result = CliRunner().invoke(cli.main, ["--dst", "outputs"] + CLI_ARGS)
    assert result.exit_code == cli.EXIT_INPUT
