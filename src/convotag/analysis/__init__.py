"""
Conversation analysis: trigger policy, analyzers and the job queue/worker
that run them off the request path.
"""

import logging
from typing import Optional

from convotag.analysis.base import Analyzer
from convotag.analysis.rule_analyzer import RuleAnalyzer
from convotag.analysis.trigger import analysis_cycle, should_analyze
from convotag.config import Settings
from convotag.config import settings as default_settings

logger = logging.getLogger(__name__)

__all__ = [
    "Analyzer",
    "RuleAnalyzer",
    "analysis_cycle",
    "create_analyzer",
    "should_analyze",
]


def create_analyzer(config: Optional[Settings] = None) -> Analyzer:
    """
    Build the analyzer selected by ``analysis_provider``.

    Falls back to the rule analyzer when the OpenAI provider is selected
    without an API key.
    """
    config = config or default_settings
    provider = config.analysis_provider.lower()

    if provider == "openai":
        if config.openai_api_key:
            from convotag.analysis.llm_analyzer import LLMAnalyzer

            return LLMAnalyzer(
                api_key=config.openai_api_key,
                model=config.openai_model,
                max_tokens=config.openai_max_tokens,
                timeout=config.analysis_timeout_seconds,
            )
        logger.warning("OpenAI API key not configured - using rule-based analyzer")
    elif provider != "rule":
        raise ValueError(f"Unknown analysis provider: {config.analysis_provider}")

    return RuleAnalyzer()
