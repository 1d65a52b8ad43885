import pytest

from escrowload.cli import main
from escrowload.sink import FILE_PREFIX, load_report

pytestmark = pytest.mark.integration


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    monkeypatch.delenv("LOAD_TEST_COUNT", raising=False)
    monkeypatch.delenv("TARGET_TPS", raising=False)


def _fast(tmp_path, *extra):
    return [
        "--rate",
        "1000",
        "--min-delay-ms",
        "0",
        "--no-progress",
        "--output-dir",
        str(tmp_path),
        *extra,
    ]


def _saved_report(tmp_path):
    files = sorted(tmp_path.glob(f"{FILE_PREFIX}*.json"))
    assert len(files) == 1
    return load_report(files[0])


def test_simulated_run_writes_report(tmp_path):
    assert main(_fast(tmp_path, "--count", "6")) == 0

    report = _saved_report(tmp_path)
    assert report.total_cycles == 6
    assert report.succeeded == 6
    assert report.metadata["workflow"]["name"] == "escrow"


def test_environment_supplies_count(tmp_path, monkeypatch):
    monkeypatch.setenv("LOAD_TEST_COUNT", "3")
    assert main(_fast(tmp_path)) == 0
    assert _saved_report(tmp_path).total_cycles == 3


def test_cycle_failures_do_not_change_exit_code(tmp_path):
    code = main(_fast(tmp_path, "--count", "4", "--fault", "deliverWork=1.0"))

    assert code == 0
    report = _saved_report(tmp_path)
    assert report.failed == 4
    assert report.steps["approveDeliverable"].attempted == 0


def test_run_file(tmp_path):
    run_file = tmp_path / "run.yaml"
    run_file.write_text(
        "run:\n"
        "  cycle_count: 2\n"
        "  target_rate: 1000\n"
        "  min_delay_ms: 0\n"
        "  show_progress: false\n"
        f"  output_dir: {tmp_path / 'out'}\n"
        "identities:\n"
        "  operator: ['0xop']\n"
        "  client: ['0xc0']\n"
        "  freelancer: ['0xf0']\n"
    )
    assert main(["--config", str(run_file)]) == 0

    report = _saved_report(tmp_path / "out")
    assert report.cycles[1].bindings == {"client": "0xc0", "freelancer": "0xf0", "operator": "0xop"}


def test_no_save(tmp_path):
    assert main(_fast(tmp_path, "--count", "1", "--no-save")) == 0
    assert list(tmp_path.iterdir()) == []


@pytest.mark.parametrize(
    "args",
    [
        ["--count", "0"],
        ["--workflow", "no-such-workflow"],
        ["--identities", "freelancer=0"],
        ["--fault", "deliverWork"],
        ["--client", "not-a-path"],
        ["--deployment", "missing-deployment.json"],
    ],
)
def test_startup_errors_exit_1(tmp_path, args):
    assert main(_fast(tmp_path, *args)) == 1
    assert list(tmp_path.iterdir()) == []


def test_list_workflows():
    assert main(["--list-workflows"]) == 0


def test_bad_flag_exits_with_usage_code():
    assert main(["--rate"]) == 2
