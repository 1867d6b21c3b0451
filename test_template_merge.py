#!/usr/bin/env python3
"""
Tests for send body rendering and email template merging.
"""

import unittest
import sys
from pathlib import Path

sys.path.append(str(Path(__file__).parent))

from campaign_lib.template_merge import merge_candidate_into_template, render_send_bodies

TEMPLATE = """<html><head><title>{{ SUBJECT }}</title></head><body>
<span class="preheader">{{PREVIEW_TEXT}}</span>
{{#if image_url}}<img src="{{ IMAGE_URL }}" alt="{{ IMAGE_ALT }}">{{/if}}
<div>{{ BODY_HTML }}</div>
<a href="{{ CTA_URL }}">{{ CTA_TEXT }}</a>
<img src="{{ ASSET_LIBRARY_URL }}/logo.png">
<a href="{{ UNSUBSCRIBE_LINK }}">unsubscribe</a>
</body></html>"""


class TestRenderSendBodies(unittest.TestCase):

    def test_prefers_candidate_html_and_text(self):
        html, text = render_send_bodies({'body_html': '<p>Hi</p>', 'body_text': 'Hi\r\nthere'})
        self.assertEqual(html, '<p>Hi</p>')
        self.assertEqual(text, 'Hi\nthere')

    def test_markdown_fallback_is_escaped(self):
        html, text = render_send_bodies({'body_markdown': 'Use **<b>** & "quotes"'})
        self.assertTrue(html.startswith('<pre style="white-space:pre-wrap;'))
        self.assertIn('Use **&lt;b&gt;** &amp; &quot;quotes&quot;', html)
        self.assertEqual(text, 'Use **<b>** & "quotes"')

    def test_empty_candidate(self):
        html, text = render_send_bodies({})
        self.assertTrue(html.endswith('></pre>'))
        self.assertEqual(text, '')

    def test_template_applied(self):
        html, _ = render_send_bodies({'subject': 'Weekly', 'body_html': '<p>Body</p>', 'cta': 'Reply'}, TEMPLATE)
        self.assertIn('<title>Weekly</title>', html)
        self.assertIn('<div><p>Body</p></div>', html)


class TestMergeCandidateIntoTemplate(unittest.TestCase):

    def test_tokens_filled(self):
        out = merge_candidate_into_template(TEMPLATE, {
            'subject': 'Gift season',
            'preview_text': 'Quick idea',
            'body_html': '<p>Body</p>',
            'cta': 'Reply now',
        }, {'cta_url': 'mailto:sales@example.com', 'unsubscribe_link': 'https://example.com/u'})

        self.assertIn('<title>Gift season</title>', out)
        self.assertIn('<span class="preheader">Quick idea</span>', out)
        self.assertIn('<a href="mailto:sales@example.com">Reply now</a>', out)
        self.assertIn('https://assets.boozebaggers.com/logo.png', out)
        self.assertIn('<a href="https://example.com/u">unsubscribe</a>', out)
        self.assertNotIn('{{', out)

    def test_image_block_kept_with_image(self):
        out = merge_candidate_into_template(TEMPLATE, {'subject': 'S', 'image_url': 'https://x/y.png'})
        self.assertIn('<img src="https://x/y.png" alt="S">', out)

    def test_image_block_removed_without_image(self):
        out = merge_candidate_into_template(TEMPLATE, {'subject': 'S'})
        self.assertNotIn('{{#if', out)
        self.assertNotIn('alt="S"', out)

    def test_default_unsubscribe_token(self):
        out = merge_candidate_into_template(TEMPLATE, {'subject': 'S'})
        self.assertIn('href="%%unsubscribe%%"', out)

    def test_replacement_text_is_literal(self):
        out = merge_candidate_into_template("<div>{{BODY_HTML}}</div>", {'body_html': r'price \1 $0'})
        self.assertEqual(out, r'<div>price \1 $0</div>')

    def test_empty_img_src_stripped(self):
        out = merge_candidate_into_template('<p>a</p><img src="{{IMAGE_URL}}" alt="x"><p>b</p>', {'subject': 'S'})
        self.assertEqual(out, '<p>a</p><p>b</p>')

    def test_requires_template(self):
        with self.assertRaises(ValueError):
            merge_candidate_into_template("", {'subject': 'S'})
        with self.assertRaises(ValueError):
            merge_candidate_into_template(TEMPLATE, None)


if __name__ == '__main__':
    unittest.main()
