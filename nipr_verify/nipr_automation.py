"""
NIPR PDB Detail Report Automation — Playwright Version

Walks the nipr.com "My NIPR" flow for one producer: look the producer up
by NPN, confirm identity (SSN last 4 + DOB), buy a PDB Detail Report with
the configured billing card, then download the receipt and the report.

This is the default automation executor for the queue.  Interpreting
the downloaded report is delegated to an optional ``analyzer``.
"""

import asyncio
import logging
import os
import re
from datetime import datetime
from typing import Any, Callable, List, Optional, Tuple

from playwright.async_api import (
    async_playwright,
    Browser,
    BrowserContext,
    Page,
    Playwright,
)

from nipr_verify.config import NIPRConfig, load_nipr_config
from nipr_verify.queue.models import AutomationResult, VerificationInput

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[int, str], Any]
Analyzer = Callable[[str], Tuple[List[str], List[str]]]

SUBMIT = "//li/button[@type='submit']"


class BrowserSetupError(RuntimeError):
    """Raised when Chromium cannot be launched."""


def _noop_progress(percent: int, message: str = "") -> None:
    pass


class NIPRAutomation:
    """Playwright-driven client for the PDB Detail Report purchase flow."""

    BASE_URL = "https://pdb.nipr.com/my-nipr/frontend/user-menu"

    def __init__(
        self,
        config: NIPRConfig,
        downloads_dir: str = os.path.join("downloads", "nipr"),
        progress: Optional[ProgressCallback] = None,
    ):
        self.config = config
        self.downloads_dir = downloads_dir
        self.progress = progress or _noop_progress
        self.playwright: Optional[Playwright] = None
        self.browser: Optional[Browser] = None
        self.context: Optional[BrowserContext] = None
        self.page: Optional[Page] = None

    async def __aenter__(self):
        await self.init_browser()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()

    async def init_browser(self):
        """Launch browser and setup context with downloads."""
        if self.page:
            return

        self.playwright = await async_playwright().start()
        try:
            self.browser = await self.playwright.chromium.launch(
                headless=self.config.headless
            )
        except Exception as e:
            message = str(e)
            logger.error("Browser launch failed: %s", message)
            if "Executable doesn't exist" in message:
                raise BrowserSetupError(
                    "Playwright browsers not installed. Please run: playwright install chromium"
                ) from e
            if "Permission denied" in message:
                raise BrowserSetupError(
                    "Browser executable permission denied. Please check file permissions."
                ) from e
            raise
        self.context = await self.browser.new_context(accept_downloads=True)
        self.page = await self.context.new_page()
        self.page.set_default_timeout(60000)

    async def close(self):
        """Clean up browser resources."""
        if self.context:
            await self.context.close()
        if self.browser:
            await self.browser.close()
        if self.playwright:
            await self.playwright.stop()
        self.page = None

    # ------------------------------------------------------------------
    # Flow
    # ------------------------------------------------------------------

    async def fetch_report(self, verification: VerificationInput) -> List[str]:
        """Run the whole flow and return the paths of the saved PDFs."""
        if not self.page:
            await self.init_browser()
        os.makedirs(self.downloads_dir, exist_ok=True)

        self.progress(5, "Opening NIPR...")
        await self._lookup_producer(verification)
        self.progress(25, "Producer verified")
        await self._select_report()
        self.progress(40, "Report selected")
        await self._fill_billing()
        self.progress(60, "Billing details submitted")
        await self._pay()
        self.progress(75, "Payment submitted")
        files = await self._download_documents(verification.npn)
        self.progress(90, "Reports downloaded")
        return files

    async def _click(self, selector: str):
        locator = self.page.locator(selector).first
        await locator.wait_for(state="visible")
        await locator.click()

    async def _check(self, selector: str):
        locator = self.page.locator(selector)
        await locator.wait_for(state="visible")
        await locator.check()

    async def _fill(self, selector: str, value: str):
        locator = self.page.locator(selector)
        await locator.wait_for(state="visible")
        await locator.fill(value)

    async def _lookup_producer(self, verification: VerificationInput):
        logger.info("Looking up producer (npn=%s)", verification.npn)
        await self.page.goto(self.BASE_URL)
        await self._click("//button[contains(@class, 'btn-link')]")
        await self._check("//input[@type='radio' and @value='NPN']")
        await self._check("//input[@name='useAgreementAccepted']")
        await self._fill("//input[@name='lastName']", verification.last_name)
        await self._fill("//input[@name='npn']", verification.npn)
        await self._click(SUBMIT)

        await self._fill("//input[@name='ssn']", verification.ssn_last4)
        await self._fill("//input[@name='dob']", verification.dob)
        await self._click(SUBMIT)

    async def _select_report(self):
        logger.info("Selecting PDB Detail Report")
        await self._click("//button[@to='/start-flow']")
        await self._click("//label[text()='PDB Detail Report']")
        await self._click(SUBMIT)
        await self._click("//button[contains(@class, 'btn-primary')]")
        await self._check("//input[contains(@name, 'userAccepted')]")
        await self._click(SUBMIT)
        await self._click("//li[contains(@class, 'next')]/button[contains(@class, 'btn-default')]")

    async def _fill_billing(self):
        logger.info("Filling billing details")
        billing = self.config.billing
        await self._click("//label[contains(@class, 'payment')]")
        await self._fill("//input[@id='firstName']", billing["first_name"])
        await self._fill("//input[@id='lastName']", billing["last_name"])
        await self._fill("//input[@id='viewAddress.addressLine1']", billing["address"])
        await self._fill("//input[@id='viewAddress.city']", billing["city"])
        await self.page.locator("//select[@id='state']").select_option(billing["state"])
        await self._fill("//input[@id='viewAddress.zip']", billing["zip"])

        phone = re.sub(r"\D", "", billing["phone"])
        await self._fill("//input[@id='phone_areaCode']", phone[0:3])
        await self._fill("//input[@id='phone_prefix']", phone[3:6])
        await self._fill("//input[@id='phone_number']", phone[6:10])
        await self._click("//button[@id='bNext']")

    async def _pay(self):
        logger.info("Submitting payment")
        payment = self.config.payment
        await self._check("//input[@id='userAgreement']")

        # Card fields live in Stripe iframes
        frames = (
            ("iframe[title='Secure card number input frame']", "input[name='cardnumber']", payment["card_number"]),
            ("iframe[title='Secure expiration date input frame']", "input[name='exp-date']", payment["expiry"]),
            ("iframe[title='Secure CVC input frame']", "input[name='cvc']", payment["cvc"]),
        )
        for frame_selector, input_selector, value in frames:
            await self.page.frame_locator(frame_selector).locator(input_selector).fill(value)

        await self._click("//button[@id='next']")
        await asyncio.sleep(3)

    async def _download(self, button_text: str, path: str) -> str:
        button = self.page.locator(f"//span[text()='{button_text}']/ancestor::button")
        await button.wait_for(state="visible")
        async with self.page.expect_download() as download_info:
            await button.click()
        download = await download_info.value
        await download.save_as(path)
        logger.info("Saved %s", path)
        return path

    async def _download_documents(self, npn: str) -> List[str]:
        stamp = datetime.now().strftime("%Y-%m-%d")
        receipt = await self._download(
            "View Receipt", os.path.join(self.downloads_dir, f"receipt_{npn}_{stamp}.pdf")
        )
        await asyncio.sleep(2)
        report = await self._download(
            "View Detail", os.path.join(self.downloads_dir, f"report_{npn}_{stamp}.pdf")
        )
        return [receipt, report]


# ------------------------------------------------------------------
# Executor entry-point
# ------------------------------------------------------------------

class NIPRExecutor:
    """Queue executor wrapping :class:`NIPRAutomation`.

    Args:
        config:        Billing/payment config; read from the environment
                       on first use when omitted.
        downloads_dir: Where PDFs are written.
        analyzer:      Optional ``report_path -> (carriers, licensed_states)``.
    """

    def __init__(
        self,
        config: Optional[NIPRConfig] = None,
        downloads_dir: str = os.path.join("downloads", "nipr"),
        analyzer: Optional[Analyzer] = None,
    ):
        self.config = config
        self.downloads_dir = downloads_dir
        self.analyzer = analyzer

    async def __call__(
        self,
        verification: VerificationInput,
        progress: Optional[ProgressCallback] = None,
    ) -> AutomationResult:
        config = self.config or load_nipr_config()
        progress = progress or _noop_progress

        async with NIPRAutomation(config, self.downloads_dir, progress) as automation:
            files = await automation.fetch_report(verification)

        carriers: List[str] = []
        states: List[str] = []
        if self.analyzer is not None:
            progress(95, "Analyzing report...")
            try:
                carriers, states = self.analyzer(files[-1])
            except Exception as e:
                # The PDFs are already paid for and saved; keep them.
                logger.error("Report analysis failed: %s", e)

        logger.info("NIPR automation completed (%d files, %d carriers)", len(files), len(carriers))
        return AutomationResult(
            success=True,
            message="NIPR automation completed successfully! PDFs downloaded.",
            files=files,
            carriers=carriers,
            licensed_states=states,
        )
