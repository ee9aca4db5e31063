"""
Reviewer Module

The Reviewer is the opaque capability that looks at a pull request diff and
produces a review. This module defines its interface, the prompt rendering,
and an implementation backed by OpenAI-compatible chat completions.

Design Decisions:
- The orchestrator receives a Reviewer instance explicitly; there is no
  process-wide client
- Use OpenAI's JSON mode for structured output; decoding happens in
  ``decoders`` so free-text backends work too
- Rate limit API calls to avoid hitting quotas
- Retry only transient API failures
"""

from typing import Any, Dict, Optional, Protocol, Union

from aiolimiter import AsyncLimiter
from openai import (
    APIConnectionError,
    APITimeoutError,
    AsyncOpenAI,
    InternalServerError,
    OpenAIError,
    RateLimitError,
)
from tenacity import (
    retry,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from forge_review.config import Settings, get_settings
from forge_review.logging_config import get_logger
from forge_review.models import ReviewContext, ReviewOutcome, ScopeKind

logger = get_logger(__name__)

MAX_BODY_CHARS = 1000


class ReviewerError(Exception):
    """Custom exception for reviewer backend failures."""
    pass


class Reviewer(Protocol):
    """
    Produces a review for a pull request.

    May return a ``ReviewOutcome``, a dict in the structured shape, or free
    text; the orchestrator decodes whatever comes back.
    """

    async def review(self, context: ReviewContext) -> Union[str, Dict[str, Any], ReviewOutcome]: ...


SYSTEM_PROMPT = """You are an expert code reviewer with deep expertise in software engineering best practices, security, performance optimization, and clean code principles.

Your task is to review a pull request diff and provide specific, actionable feedback.

## Review Guidelines:

1. **Focus on significant issues only** - Don't nitpick minor style issues unless they impact readability significantly.

2. **Be specific** - Reference exact lines, variable names, and code snippets.

3. **Provide actionable suggestions** - When a fix is small, include the replacement code in "suggestion".

4. **Severity**:
   - CRITICAL: Security holes, data loss, crashes in common paths
   - HIGH: Bugs, incorrect behaviour
   - MEDIUM: Performance issues, maintainability concerns, missed edge cases
   - LOW: Style improvements, minor optimizations

5. **Categories**: BUG, SECURITY, PERFORMANCE, STYLE, DOCS, TEST, LOGIC, REFACTOR

## Line addressing:

Every diff line is labelled with its coordinate:
- `[NEW:n] +code` is an added line, comment on it with "new_line": n
- `[OLD:n] -code` is a deleted line, comment on it with "old_line": n
- `[NEW:n]  code` is an unchanged context line, use "new_line": n

Set exactly one of "new_line" or "old_line". Comments on lines that are not in the diff are discarded.

## Output Format:

You MUST respond with valid JSON matching this exact schema:

{
  "decision": "APPROVED" | "REQUEST_CHANGES" | "COMMENT",
  "summary": "Overall assessment of the changes",
  "comments": [
    {
      "path": "path/to/file.py",
      "new_line": 42,
      "category": "BUG",
      "severity": "HIGH",
      "body": "Clear description of the issue",
      "suggestion": "optional replacement code for the commented line"
    }
  ]
}

Use REQUEST_CHANGES only for CRITICAL or HIGH issues. If no issues are found, return an empty comments array with a positive summary."""


def build_user_prompt(context: ReviewContext) -> str:
    """Render the user prompt for a review context."""
    pr = context.pull_request
    prompt_parts = ["# Code Review Request\n"]

    prompt_parts.append(f"## Repository: {context.full_repo_name}")
    prompt_parts.append(f"## PR #{pr.number}: {pr.title}")
    prompt_parts.append(f"Author: {pr.author.login or 'unknown'}")
    if pr.head.ref or pr.base.ref:
        prompt_parts.append(f"Branch: {pr.head.ref} -> {pr.base.ref}\n")

    if pr.body:
        body = pr.body[:MAX_BODY_CHARS] + "..." if len(pr.body) > MAX_BODY_CHARS else pr.body
        prompt_parts.append(f"## PR Description:\n{body}\n")

    if context.scope.kind == ScopeKind.INCREMENTAL:
        shas = ", ".join(c.sha[:7] for c in context.scope.new_commits)
        prompt_parts.append(
            f"## Scope:\nIncremental review of commits since "
            f"{(context.scope.last_reviewed_sha or '')[:7]}: {shas}\n"
        )
    elif context.scope.kind == ScopeKind.REBASE:
        prompt_parts.append("## Scope:\nThe branch was rebased; review the full diff again.\n")

    prompt_parts.append("## Changed Files:")
    prompt_parts.extend(f"- {f.path} ({f.status.value})" for f in context.files)

    prompt_parts.append("\n## Code Changes:\n")
    prompt_parts.append(context.diff_text)
    prompt_parts.append("\n\n## Your Review:\n")
    prompt_parts.append(
        f"Answer in language '{context.language}'. "
        "Provide your review in JSON format."
    )

    return "\n".join(prompt_parts)


class OpenAIReviewer:
    """
    Reviewer backed by an OpenAI-compatible chat completion API.

    Usage:
        reviewer = OpenAIReviewer()
        raw = await reviewer.review(context)
    """

    def __init__(self, settings: Optional[Settings] = None, client: Optional[AsyncOpenAI] = None):
        self.settings = settings or get_settings()
        self.client = client or AsyncOpenAI(
            api_key=self.settings.openai_api_key,
            base_url=self.settings.openai_base_url
        )

        # Rate limiter for OpenAI API
        self._rate_limiter = AsyncLimiter(
            max_rate=self.settings.openai_rate_limit_rpm,
            time_period=60
        )

    @retry(
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, min=2, max=30),
        retry=retry_if_exception_type(
            (APIConnectionError, APITimeoutError, RateLimitError, InternalServerError)
        ),
        reraise=True
    )
    async def _complete(self, user_prompt: str) -> str:
        async with self._rate_limiter:
            response = await self.client.chat.completions.create(
                model=self.settings.openai_model,
                messages=[
                    {"role": "system", "content": SYSTEM_PROMPT},
                    {"role": "user", "content": user_prompt}
                ],
                temperature=self.settings.openai_temperature,
                max_tokens=self.settings.openai_max_tokens,
                response_format={"type": "json_object"}
            )

        content = response.choices[0].message.content
        logger.debug(
            "Received AI response",
            response_length=len(content or ""),
            usage=response.usage.model_dump() if response.usage else None
        )
        return content or ""

    async def review(self, context: ReviewContext) -> str:
        """
        Ask the model to review ``context``.

        Returns:
            Raw model output, expected to be JSON

        Raises:
            ReviewerError: If the API call fails or returns nothing
        """
        user_prompt = build_user_prompt(context)

        logger.info(
            "Sending code review request to AI",
            repo=context.full_repo_name,
            pr_number=context.pull_request.number,
            num_files=len(context.files),
            prompt_length=len(user_prompt)
        )

        try:
            content = await self._complete(user_prompt)
        except OpenAIError as e:
            logger.error(
                "AI review failed",
                error=str(e),
                error_type=type(e).__name__
            )
            raise ReviewerError(f"AI review failed: {e}") from e

        if not content.strip():
            raise ReviewerError("Empty response from AI")

        return content
