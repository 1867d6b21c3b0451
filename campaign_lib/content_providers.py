#!/usr/bin/env python3
"""
Content Providers

A content provider turns a weekly context (week, focus notes, policy text,
constraints) into candidate emails, one per funnel stage. The generator
validates the result; providers only shape it.
"""

import json
import logging
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional

from openai import OpenAI

from campaign_lib.errors import CandidateValidationError, ConfigurationError

logger = logging.getLogger(__name__)

FUNNEL_STAGES = ("top", "mid", "bottom")
CANDIDATE_COUNT = 3

SYSTEM_PROMPT = (
    "You generate internal sales enablement weekly email candidates. "
    "Return strict JSON only."
)


class ContentProvider:
    """Base class: produce exactly three candidate dicts for a week"""

    name = "base"

    def generate_candidates(self, context: Dict[str, Any]) -> List[Dict[str, Any]]:
        raise NotImplementedError


# ============================================================================
# MOCK PROVIDER
# ============================================================================

class MockContentProvider(ContentProvider):
    """Deterministic copy for development and tests"""

    name = "mock"

    def generate_candidates(self, context: Dict[str, Any]) -> List[Dict[str, Any]]:
        focus = (context.get('focus_notes') or '').strip()
        theme = focus or f"the week of {context.get('week_of') or 'this week'}"

        return [
            {
                'funnel_stage': 'top',
                'subject': f"Weekly touchpoint: {theme}",
                'preview_text': "One quick idea to help retailers move product this week.",
                'body_html': (
                    f"<p>Tie the note to <strong>{theme}</strong>.</p>"
                    "<ul><li>Keep it short</li><li>One clear CTA</li><li>No pricing</li></ul>"
                ),
                'body_text': f"Tie the note to {theme}.\n\n- Keep it short\n- One clear CTA\n- No pricing\n",
                'body_markdown': f"Tie the note to **{theme}**.\n\n- Keep it short\n- One clear CTA\n- No pricing\n",
                'cta': "Reply to request the one-pager",
                'image_url': None,
            },
            {
                'funnel_stage': 'mid',
                'subject': "A simple talking point for your next retail visit",
                'preview_text': "Use this 15-second script to introduce the product without sounding salesy.",
                'body_html': (
                    "<p>\"Here's a small add-on that turns a standard pour into a giftable moment "
                    "without extra work.\"</p>"
                    "<p>If you want, I can send a shelf-talker PDF you can drop at accounts.</p>"
                ),
                'body_text': (
                    "\"Here's a small add-on that turns a standard pour into a giftable moment "
                    "without extra work.\"\n\nIf you want, I can send a shelf-talker PDF you can drop at accounts.\n"
                ),
                'body_markdown': (
                    "\"Here's a small add-on that turns a standard pour into a giftable moment "
                    "without extra work.\"\n\nIf you want, I can send a shelf-talker PDF you can drop at accounts.\n"
                ),
                'cta': "Reply for the shelf-talker PDF",
                'image_url': None,
            },
            {
                'funnel_stage': 'bottom',
                'subject': "Retailer-friendly: low effort, high perceived value",
                'preview_text': "A positioning angle that's easy to explain and easy to stock.",
                'body_html': (
                    "<p>Simple to demo. Easy to explain. Extremely giftable.</p>"
                    "<ul><li>No liquor license required</li><li>Small countertop footprint</li>"
                    "<li>Repeat-purchase gift</li></ul>"
                ),
                'body_text': (
                    "Simple to demo. Easy to explain. Extremely giftable.\n\n"
                    "- No liquor license required\n- Small countertop footprint\n- Repeat-purchase gift\n"
                ),
                'body_markdown': (
                    "Simple to demo. Easy to explain. Extremely giftable.\n\n"
                    "- No liquor license required\n- Small countertop footprint\n- Repeat-purchase gift\n"
                ),
                'cta': "Reply for a small display option",
                'image_url': None,
            },
        ]


# ============================================================================
# OPENAI PROVIDER
# ============================================================================

class OpenAIContentProvider(ContentProvider):
    """
    Chat completion in JSON mode. The model must answer with
    {"candidates": [...]} holding exactly three items; anything else is
    rejected before the generator sees it.
    """

    name = "openai"

    def __init__(self, api_key: str, model: str = "gpt-4o-mini", timeout: float = 60.0,
                 policy_path: Optional[str] = None, client: Optional[Any] = None):
        if not api_key and client is None:
            raise ConfigurationError("OPEN_AI_KEY is required for the openai content provider")
        self.model = model
        self.policy_path = policy_path
        self.client = client or OpenAI(api_key=api_key, timeout=timeout)

    def load_policy_text(self, context: Dict[str, Any]) -> str:
        if isinstance(context.get('policy_text'), str):
            return context['policy_text']
        if self.policy_path:
            return Path(self.policy_path).read_text(encoding='utf-8')
        return ""

    def build_prompt(self, context: Dict[str, Any]) -> str:
        allowlist = context.get('allowed_image_urls') or []
        allowlist_text = "\n".join(f"- {url}" for url in allowlist) or "- (none)"
        constraints = context.get('constraints') or {}

        return "\n".join([
            "Follow the policy exactly and return JSON only.",
            'Return {"candidates": [...]} with one candidate each for funnel_stage top, mid and bottom.',
            "",
            f"week_of: {context.get('week_of')}",
            f"focus_notes: {context.get('focus_notes') or 'null'}",
            f"constraints: {json.dumps(constraints, sort_keys=True)}",
            "",
            "Approved image URL allowlist:",
            allowlist_text,
            "",
            "Policy:",
            self.load_policy_text(context),
        ])

    def generate_candidates(self, context: Dict[str, Any]) -> List[Dict[str, Any]]:
        logger.info(f"Requesting candidates from {self.model} for week {context.get('week_of')}")
        response = self.client.chat.completions.create(
            model=self.model,
            response_format={"type": "json_object"},
            messages=[
                {"role": "system", "content": SYSTEM_PROMPT},
                {"role": "user", "content": self.build_prompt(context)},
            ],
        )

        content = response.choices[0].message.content if response.choices else None
        if not isinstance(content, str) or not content.strip():
            raise CandidateValidationError("OpenAI response missing message content")

        return parse_candidates(content, context.get('allowed_image_urls') or [])


def parse_candidates(raw_text: str, allowed_image_urls: Iterable[str] = ()) -> List[Dict[str, Any]]:
    """Strictly parse a {"candidates": [...]} JSON document into normalized dicts"""
    try:
        payload = json.loads(raw_text)
    except json.JSONDecodeError as e:
        raise CandidateValidationError(f"Expected strict JSON but got: {raw_text[:200]}") from e

    items = payload.get('candidates') if isinstance(payload, dict) else None
    if not isinstance(items, list):
        raise CandidateValidationError("JSON must contain a candidates array")
    if len(items) != CANDIDATE_COUNT:
        raise CandidateValidationError(
            f"Expected exactly {CANDIDATE_COUNT} candidates, got {len(items)}"
        )

    allowed = set(allowed_image_urls)
    return [normalize_candidate(item, idx, allowed) for idx, item in enumerate(items)]


def normalize_candidate(item: Any, idx: int, allowed_image_urls: set) -> Dict[str, Any]:
    label = f"Candidate {idx + 1}"
    if not isinstance(item, dict):
        raise CandidateValidationError(f"{label} is not an object")

    stage = _clean(item.get('funnel_stage'))
    if stage not in FUNNEL_STAGES:
        raise CandidateValidationError(f"{label} has invalid funnel_stage: {item.get('funnel_stage')!r}")

    body_text = _required(item.get('body_text') or item.get('body'), f"{label} body_text")
    image_url = _clean(item.get('image_url'))

    return {
        'funnel_stage': stage,
        'subject': _required(item.get('subject'), f"{label} subject"),
        'preview_text': _required(item.get('preview_text') or item.get('preview'), f"{label} preview_text"),
        'body_html': _required(item.get('body_html') or item.get('body'), f"{label} body_html"),
        'body_text': body_text,
        'body_markdown': _clean(item.get('body_markdown')) or body_text,
        'cta': _required(item.get('cta'), f"{label} cta"),
        # only catalog images may be referenced
        'image_url': image_url if image_url in allowed_image_urls else None,
    }


def _clean(value) -> Optional[str]:
    if not isinstance(value, str):
        return None
    value = value.strip()
    return value or None


def _required(value, label: str) -> str:
    cleaned = _clean(value)
    if not cleaned:
        raise CandidateValidationError(f"{label} is required")
    return cleaned


def build_content_provider(settings) -> ContentProvider:
    """Provider selected by settings.content.provider"""
    provider = (settings.content.provider or "mock").lower()
    if provider == "mock":
        return MockContentProvider()
    if provider == "openai":
        return OpenAIContentProvider(
            api_key=settings.content.api_key,
            model=settings.content.model,
            timeout=settings.content.timeout_seconds,
            policy_path=settings.content.policy_path,
        )
    raise ConfigurationError(f'Invalid CONTENT_PROVIDER: "{settings.content.provider}"')
