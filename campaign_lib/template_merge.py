#!/usr/bin/env python3
"""
Rendering helpers that turn a locked candidate into the frozen bodies stored
on a send row, plus placeholder merging for full HTML email templates.
"""

import html
import re
from typing import Any, Dict, Optional, Tuple

DEFAULT_ASSET_LIBRARY_URL = "https://assets.boozebaggers.com"
DEFAULT_UNSUBSCRIBE_LINK = "%%unsubscribe%%"

PRE_STYLE = "white-space:pre-wrap;font-family:system-ui,Segoe UI,Roboto,Helvetica,Arial,sans-serif"

_IF_IMAGE_BLOCK = re.compile(r'{{#if\s+image_url}}(.*?){{/if}}', re.IGNORECASE | re.DOTALL)
_EMPTY_IMG = re.compile(r'<img\b[^>]*\bsrc=(["\'])\s*\1[^>]*>', re.IGNORECASE)


def _value(candidate: Any, *names: str) -> str:
    for name in names:
        value = candidate.get(name) if isinstance(candidate, dict) else getattr(candidate, name, None)
        if isinstance(value, str) and value:
            return value
    return ""


def render_send_bodies(candidate: Any, template_html: Optional[str] = None) -> Tuple[str, str]:
    """
    (body_html, body_text) for a send snapshot.

    HTML prefers the candidate's own HTML and otherwise wraps the escaped
    markdown in a pre block; with a template the result is merged into it.
    Text prefers the plain-text body, then markdown.
    """
    markdown = _value(candidate, 'body_markdown')
    text = _value(candidate, 'body_text') or markdown
    body_html = _value(candidate, 'body_html')
    if not body_html:
        body_html = f'<pre style="{PRE_STYLE}">{html.escape(markdown or text)}</pre>'

    if template_html:
        fields = {
            'subject': _value(candidate, 'subject'),
            'preview_text': _value(candidate, 'preview_text'),
            'body_html': body_html,
            'cta': _value(candidate, 'cta'),
            'image_url': _value(candidate, 'image_url'),
        }
        body_html = merge_candidate_into_template(template_html, fields)

    return body_html, text.replace('\r\n', '\n')


def _replace_token(source: str, token: str, value: str) -> str:
    pattern = re.compile(r'{{\s*' + re.escape(token) + r'\s*}}', re.IGNORECASE)
    return pattern.sub(lambda _: value, source)


def merge_candidate_into_template(template_html: str, candidate: Any,
                                  options: Optional[Dict[str, str]] = None) -> str:
    """Fill {{ TOKEN }} placeholders and the {{#if image_url}} block"""
    if not isinstance(template_html, str) or not template_html:
        raise ValueError("template_html must be a non-empty string")
    if candidate is None:
        raise ValueError("candidate is required")
    options = options or {}

    subject = _value(candidate, 'subject')
    image_url = _value(candidate, 'image_url').strip() or None
    unsubscribe = options.get('unsubscribe_link') or DEFAULT_UNSUBSCRIBE_LINK

    if image_url:
        out = _IF_IMAGE_BLOCK.sub(lambda m: m.group(1), template_html)
    else:
        out = _IF_IMAGE_BLOCK.sub('', template_html)

    tokens = {
        'SUBJECT': subject,
        'HEADLINE': subject,
        'PREVIEW_TEXT': _value(candidate, 'preview_text', 'preview'),
        'BODY_HTML': _value(candidate, 'body_html', 'body'),
        'CTA_TEXT': _value(candidate, 'cta'),
        'CTA_URL': options.get('cta_url') or '#',
        'IMAGE_URL': image_url or '',
        'IMAGE_ALT': options.get('image_alt') or subject or 'Product image',
        'ASSET_LIBRARY_URL': options.get('asset_library_url') or DEFAULT_ASSET_LIBRARY_URL,
        'UNSUBSCRIBE_LINK': unsubscribe,
        'UNSUBSCRIBE_URL': unsubscribe,
        'MANAGE_PREFS_URL': options.get('manage_prefs_url') or unsubscribe,
    }
    for token, value in tokens.items():
        out = _replace_token(out, token, value)

    return _EMPTY_IMG.sub('', out)
