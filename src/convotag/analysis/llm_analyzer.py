"""LLM-based conversation analyzer using OpenAI."""

import json
import logging
import time
from typing import Any

from openai import OpenAI, OpenAIError

from convotag.exceptions import AnalysisUnavailableError
from convotag.models.analysis import Transcript
from convotag.tagging.taxonomy import PROBLEM_TYPES

logger = logging.getLogger(__name__)

# Messages kept from each end of a long transcript
SAMPLE_HEAD = 4
SAMPLE_TAIL = 6
MAX_MESSAGE_CHARS = 800


ANALYSIS_PROMPT = """Analyze this mentoring conversation and extract structured metadata in JSON format.

# Conversation
- Title: {title}
- Mentor: {mentor}
- Messages: {message_count}

# Messages{sampled_note}:
{sample_messages}

# Extract the following:

1. **summary** - One sentence describing what the conversation was about.

2. **key_insights** - Up to 3 observations about the user's needs.

3. **main_topics** - Up to 5 short topic labels.

4. **problem_types** - Up to 3 of: {problem_types}

5. **suggested_actions** - Up to 3 concrete next steps for the user.

6. **sentiment_score** - Numeric sentiment (-1.0 to 1.0)
   -1.0 = very negative, 0.0 = neutral, 1.0 = very positive

7. **complexity_score** - Integer 1 (simple) to 5 (very complex)

8. **engagement_score** - How engaged the user is (0.0 to 1.0)

9. **auto_tags** - Tag names in snake_case: the problem types above plus
   sentiment_positive / sentiment_neutral / sentiment_negative and one of
   complexity_basic / complexity_intermediate / complexity_advanced

10. **confidence_scores** - Map from each auto tag to your confidence (0.0 to 1.0)

Return ONLY valid JSON in this exact format:
{{
  "summary": "...",
  "key_insights": ["..."],
  "main_topics": ["..."],
  "problem_types": ["..."],
  "suggested_actions": ["..."],
  "sentiment_score": 0.0,
  "complexity_score": 1,
  "engagement_score": 0.0,
  "auto_tags": ["..."],
  "confidence_scores": {{"tag_name": 0.0}}
}}"""


class LLMAnalyzer:
    """Analyzer that uses an OpenAI chat model to analyze conversations."""

    def __init__(
        self,
        api_key: str,
        model: str = "gpt-4o-mini",
        max_tokens: int = 1200,
        timeout: float = 30.0,
    ):
        """Initialize the LLM analyzer.

        Args:
            api_key: OpenAI API key
            model: OpenAI model to use (default: gpt-4o-mini)
            max_tokens: Maximum tokens for response
            timeout: Request timeout in seconds
        """
        self.client = OpenAI(api_key=api_key, timeout=timeout, max_retries=0)
        self.model = model
        self.max_tokens = max_tokens

    def analyze(self, transcript: Transcript) -> dict[str, Any]:
        """Analyze a conversation using the OpenAI API.

        Args:
            transcript: The conversation to analyze

        Returns:
            Raw analysis mapping with model_used and processing_time_ms set

        Raises:
            AnalysisUnavailableError: If the API call fails or returns
                something that is not a JSON object
        """
        prompt = self._build_prompt(transcript)

        start_time = time.time()
        try:
            response = self.client.chat.completions.create(
                model=self.model,
                messages=[
                    {
                        "role": "system",
                        "content": "You are an expert at analyzing learning and mentoring conversations. Return only valid JSON.",
                    },
                    {"role": "user", "content": prompt},
                ],
                max_tokens=self.max_tokens,
                temperature=0.3,  # Lower temperature for more consistent output
                response_format={"type": "json_object"},
            )
        except OpenAIError as e:
            logger.warning(f"LLM analysis failed for {transcript.conversation_id}: {e}")
            raise AnalysisUnavailableError(f"OpenAI request failed: {e}") from e
        duration_ms = int((time.time() - start_time) * 1000)

        content = response.choices[0].message.content if response.choices else None
        if not content:
            raise AnalysisUnavailableError("Empty response from OpenAI")

        try:
            data = json.loads(content)
        except json.JSONDecodeError as e:
            raise AnalysisUnavailableError(f"OpenAI returned invalid JSON: {e}") from e
        if not isinstance(data, dict):
            raise AnalysisUnavailableError("OpenAI response is not a JSON object")

        data["model_used"] = getattr(response, "model", None) or self.model
        data["processing_time_ms"] = duration_ms
        usage = getattr(response, "usage", None)
        if usage is not None:
            data.setdefault("token_usage", {"total_tokens": usage.total_tokens})

        logger.debug(
            f"LLM analysis for {transcript.conversation_id} took {duration_ms}ms"
        )
        return data

    def _build_prompt(self, transcript: Transcript) -> str:
        """Build the analysis prompt from a sampled transcript.

        Args:
            transcript: The conversation to analyze

        Returns:
            Formatted prompt string
        """
        messages = transcript.messages
        sampled = len(messages) > SAMPLE_HEAD + SAMPLE_TAIL
        if sampled:
            messages = messages[:SAMPLE_HEAD] + messages[-SAMPLE_TAIL:]

        lines = []
        for message in messages:
            content = message.content
            if len(content) > MAX_MESSAGE_CHARS:
                content = content[:MAX_MESSAGE_CHARS] + "..."
            lines.append(f"[{message.message_order}] {message.role}: {content}")

        return ANALYSIS_PROMPT.format(
            title=transcript.title,
            mentor=transcript.category or "unknown",
            message_count=len(transcript.messages),
            sampled_note=(
                f" (first {SAMPLE_HEAD} and last {SAMPLE_TAIL})" if sampled else ""
            ),
            sample_messages="\n".join(lines),
            problem_types=", ".join(PROBLEM_TYPES),
        )
