"""Pytest configuration and fixtures for E2E tests.

These tests drive a running DocChat server in a browser. Start the server
(./scripts/dev.sh) and point DOCCHAT_E2E_URL at it, e.g.

    DOCCHAT_E2E_URL=http://localhost:5001 pytest tests/e2e
"""
import os
import uuid

import pytest
from playwright.sync_api import Page, expect

BASE_URL = os.getenv("DOCCHAT_E2E_URL", "")
TEST_TIMEOUT = 30000  # 30 seconds
PASSWORD = "Str0ng!pass"

if not BASE_URL:
    pytest.skip("DOCCHAT_E2E_URL is not set", allow_module_level=True)


# Note: pytest-playwright provides these built-in options:
# --headed: Run tests in headed mode (visible browser)
# --slowmo: Slow down operations by N milliseconds
# --browser: Choose browser (chromium, firefox, webkit)


@pytest.fixture
def auth_page(page: Page) -> Page:
    """Navigate to the app, logged out."""
    page.goto(BASE_URL)
    page.wait_for_load_state("networkidle")
    page.set_default_timeout(TEST_TIMEOUT)
    return page


@pytest.fixture
def chat_page(auth_page: Page) -> Page:
    """Register a fresh account through the UI and land on the chat view."""
    email = f"e2e-{uuid.uuid4().hex[:10]}@example.com"

    auth_page.locator('[data-tab="register"]').click()
    form = auth_page.locator("#register-form")
    form.locator('input[name="username"]').fill("e2e")
    form.locator('input[name="email"]').fill(email)
    form.locator('input[name="password"]').fill(PASSWORD)
    form.locator('button[type="submit"]').click()

    expect(auth_page.locator("#app-view")).to_be_visible()
    return auth_page


@pytest.fixture
def test_message():
    """Standard test message."""
    return "Hello, this is a test message"
