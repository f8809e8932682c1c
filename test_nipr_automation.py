"""
Default executor tests (browser session stubbed out)
"""

import pytest

from conftest import make_input
from nipr_verify.config import NIPRConfig
from nipr_verify.nipr_automation import NIPRAutomation, NIPRExecutor
from nipr_verify.queue import ExecutionError
from nipr_verify.queue.worker import run_executor


@pytest.fixture
def fake_browser(monkeypatch):
    async def enter(self):
        return self

    async def leave(self, exc_type, exc_val, exc_tb):
        return None

    async def fetch_report(self, verification):
        self.progress(90, "Reports downloaded")
        return [f"receipt_{verification.npn}.pdf", f"report_{verification.npn}.pdf"]

    monkeypatch.setattr(NIPRAutomation, "__aenter__", enter)
    monkeypatch.setattr(NIPRAutomation, "__aexit__", leave)
    monkeypatch.setattr(NIPRAutomation, "fetch_report", fetch_report)


def test_missing_billing_config_fails_the_run(monkeypatch):
    monkeypatch.delenv("NIPR_CARD_NUMBER", raising=False)

    with pytest.raises(ExecutionError, match="NIPR_CARD_NUMBER"):
        run_executor(NIPRExecutor(), make_input(), lambda percent, message="": None)


def test_executor_returns_files_and_analysis(fake_browser, tmp_path):
    seen = []
    executor = NIPRExecutor(
        config=NIPRConfig(),
        downloads_dir=str(tmp_path),
        analyzer=lambda path: (["Acme Life"], ["TX"]),
    )

    result = run_executor(executor, make_input(npn="42"), lambda p, m="": seen.append(p))

    assert result.files == ["receipt_42.pdf", "report_42.pdf"]
    assert result.carriers == ["Acme Life"]
    assert result.licensed_states == ["TX"]
    assert seen == [90, 95]


def test_analysis_failure_keeps_the_downloads(fake_browser, tmp_path):
    def broken(path):
        raise ValueError("unreadable pdf")

    executor = NIPRExecutor(config=NIPRConfig(), downloads_dir=str(tmp_path), analyzer=broken)

    result = run_executor(executor, make_input(), lambda p, m="": None)

    assert result.success
    assert result.carriers == []
    assert len(result.files) == 2
