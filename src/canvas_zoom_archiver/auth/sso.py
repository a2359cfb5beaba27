"""Heuristic walk through the LMS login page and the identity provider's forms."""
from typing import List, Optional
from canvas_zoom_archiver.browser.driver import BrowserDriver
from canvas_zoom_archiver.config.logging import get_logger
from canvas_zoom_archiver.config.settings import Settings, settings as default_settings

logger = get_logger("auth.sso")

LMS_LOGIN_MARKER = "/login/canvas"
IDP_HOST_MARKER = "login.microsoftonline.com"

EMAIL_SELECTORS = ["input[type='email']", "input[name='loginfmt']", "#i0116"]
PASSWORD_SELECTORS = ["input[type='password']", "input[name='passwd']", "#i0118"]
SUBMIT_SELECTORS = ["input[type='submit']", "#idSIButton9", "button[type='submit']"]
STAY_SIGNED_IN_BUTTON = "#idSIButton9"
STAY_SIGNED_IN_TEXT = "Stay signed in?"

# Returns the text of the clicked control, or null
CLICK_SSO_BUTTON_JS = """
(phrases) => {
    const wanted = phrases.map(p => p.toUpperCase());
    const controls = document.querySelectorAll(
        '.ic-Login__body button, .ic-Login__body a, .ic-Login__body input[type=submit]');
    for (const el of controls) {
        const text = (el.innerText || el.value || '').toUpperCase();
        if (wanted.some(p => text.includes(p))) {
            el.click();
            return text.trim();
        }
    }
    return null;
}
"""

CLICK_ACCOUNT_TILE_JS = """
(email) => {
    const wanted = email.toLowerCase();
    const tiles = document.querySelectorAll('[data-test-id], .table[role=button], div[role=button]');
    for (const el of tiles) {
        const id = (el.getAttribute('data-test-id') || '').toLowerCase();
        const text = (el.innerText || '').toLowerCase();
        if (id === wanted || text.includes(wanted)) {
            el.click();
            return true;
        }
    }
    return false;
}
"""


class SsoNavigator:
    """Moves the browser past login screens; every step is bounded and optional.

    A step whose controls never show up is logged and skipped, since the page
    may already be past it.
    """

    def __init__(self, driver: BrowserDriver, settings: Optional[Settings] = None):
        self.driver = driver
        self.settings = settings or default_settings
        self.step_timeout = self.settings.sso_step_timeout_seconds

    async def run(self) -> List[str]:
        """Run every applicable step and return the names of the ones that acted."""
        steps = []
        await self.driver.wait_for_load(self.step_timeout)
        url = await self.driver.current_url()

        if LMS_LOGIN_MARKER in url:
            if await self.start_sso_from_lms():
                steps.append("lms_sso_button")
                await self.driver.wait_for_load(self.step_timeout)
                url = await self.driver.current_url()

        if IDP_HOST_MARKER not in url:
            logger.debug("Not on identity provider page", url=url.split("?")[0], steps=steps)
            return steps

        if await self.pick_remembered_account():
            steps.append("account_tile")
            await self.driver.wait_for_load(self.step_timeout)
        elif await self.submit_email():
            steps.append("email")

        if await self.submit_password():
            steps.append("password")

        if await self.dismiss_stay_signed_in():
            steps.append("stay_signed_in")

        await self.driver.wait_for_load(self.step_timeout)
        logger.info("SSO flow finished", steps=steps)
        return steps

    async def start_sso_from_lms(self) -> bool:
        clicked = await self.driver.evaluate_script(CLICK_SSO_BUTTON_JS, list(self.settings.sso_button_phrases))
        if clicked:
            logger.info("Clicked SSO control on LMS login page", control=clicked)
            return True
        logger.warning("No SSO control matched on LMS login page",
                       phrases=self.settings.sso_button_phrases)
        return False

    async def pick_remembered_account(self) -> bool:
        if not self.settings.sso_email:
            return False
        picked = await self.driver.evaluate_script(CLICK_ACCOUNT_TILE_JS, self.settings.sso_email)
        if picked:
            logger.info("Selected remembered account tile")
        return bool(picked)

    async def _first_visible(self, selectors: List[str]) -> Optional[str]:
        # The first selector gets the full wait, the alternates only a short one
        for i, selector in enumerate(selectors):
            timeout = self.step_timeout if i == 0 else min(2.0, self.step_timeout)
            if await self.driver.wait_for_selector(selector, timeout):
                return selector
        return None

    async def _submit(self) -> None:
        selector = await self._first_visible(SUBMIT_SELECTORS)
        if selector:
            await self.driver.click(selector, self.step_timeout)
            await self.driver.wait_for_load(self.step_timeout)

    async def submit_email(self) -> bool:
        if not self.settings.sso_email:
            logger.warning("Identity provider asks for an email but SSO_EMAIL is not set")
            return False
        selector = await self._first_visible(EMAIL_SELECTORS)
        if not selector:
            return False
        await self.driver.fill(selector, self.settings.sso_email, self.step_timeout)
        await self._submit()
        logger.info("Submitted email")
        return True

    async def submit_password(self) -> bool:
        if not self.settings.sso_password:
            logger.debug("SSO_PASSWORD not set, skipping password step")
            return False
        selector = await self._first_visible(PASSWORD_SELECTORS)
        if not selector:
            return False
        await self.driver.fill(selector, self.settings.sso_password, self.step_timeout)
        await self._submit()
        logger.info("Submitted password")
        return True

    async def dismiss_stay_signed_in(self) -> bool:
        content = await self.driver.page_content()
        if STAY_SIGNED_IN_TEXT not in content:
            return False
        if not await self.driver.wait_for_selector(STAY_SIGNED_IN_BUTTON, self.step_timeout):
            return False
        await self.driver.click(STAY_SIGNED_IN_BUTTON, self.step_timeout)
        logger.info("Dismissed stay-signed-in prompt")
        return True
