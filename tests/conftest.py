from __future__ import annotations

import json
import logging

import pytest

from statement_analyzer.logging import LOGGER_NAME, clear_log_context
from statement_analyzer.prompts.manager import PromptManager, PromptSet
from tests.helpers import PROMPTS_ROOT, VALID_ANALYSIS


@pytest.fixture
def prompt_set() -> PromptSet:
    return PromptManager(PROMPTS_ROOT).load_prompt_set(
        prompt_name="financial_analysis", version="v001"
    )


@pytest.fixture
def valid_analysis_text() -> str:
    return json.dumps(VALID_ANALYSIS)


@pytest.fixture(autouse=True)
def _reset_logging_state():
    yield
    clear_log_context()
    package_logger = logging.getLogger(LOGGER_NAME)
    for handler in list(package_logger.handlers):
        package_logger.removeHandler(handler)
        handler.close()
    package_logger.setLevel(logging.NOTSET)
