"""
Dialectic Core — Response Shape Guard Tests
"""

import json
import os
import sys
import unittest

_project_root = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
if _project_root not in sys.path:
    sys.path.insert(0, _project_root)

from dialectic.errors import ModelResponseValidationError
from dialectic.guards import (
    is_header_context,
    is_markdown_document,
    parse_json_object,
    should_enqueue_render,
    validate_response,
)
from scheduler.types import OutputType

HEADER = {
    "system_materials": {"notes": "x"},
    "header_context_artifact": {"type": "header_context"},
    "context_for_documents": [],
}


class TestHeaderContext(unittest.TestCase):

    def test_exact_keys(self):
        self.assertTrue(is_header_context(HEADER))

    def test_missing_key(self):
        partial = {k: v for k, v in HEADER.items() if k != "context_for_documents"}
        self.assertFalse(is_header_context(partial))

    def test_extra_key(self):
        self.assertFalse(is_header_context({**HEADER, "extra": 1}))

    def test_files_to_generate_rejected(self):
        self.assertFalse(is_header_context({**HEADER, "files_to_generate": []}))

    def test_not_a_dict(self):
        self.assertFalse(is_header_context([HEADER]))

    def test_validate_parses_text(self):
        value = validate_response(OutputType.HEADER_CONTEXT, json.dumps(HEADER))
        self.assertEqual(value, HEADER)

    def test_validate_accepts_fenced_json(self):
        fenced = "```json\n" + json.dumps(HEADER) + "\n```"
        self.assertEqual(validate_response(OutputType.HEADER_CONTEXT, fenced), HEADER)

    def test_validate_rejects_prose(self):
        with self.assertRaises(ModelResponseValidationError) as ctx:
            validate_response(OutputType.HEADER_CONTEXT, "# Not JSON")
        self.assertEqual(ctx.exception.code, "RESPONSE_VALIDATION_FAILED")

    def test_validate_reports_wrong_keys(self):
        with self.assertRaises(ModelResponseValidationError) as ctx:
            validate_response(OutputType.HEADER_CONTEXT, json.dumps({"a": 1}))
        self.assertEqual(ctx.exception.details["keys"], ["a"])


class TestMarkdown(unittest.TestCase):

    def test_document(self):
        self.assertTrue(is_markdown_document("# Title\n\nBody"))
        self.assertEqual(validate_response(OutputType.MARKDOWN_DOCUMENT, "text"), "text")

    def test_empty_rejected(self):
        for content in ("", "   \n", None):
            with self.subTest(content=content):
                self.assertFalse(is_markdown_document(content))
                with self.assertRaises(ModelResponseValidationError):
                    validate_response(OutputType.MARKDOWN_DOCUMENT, content)

    def test_json_object_is_not_a_document(self):
        self.assertFalse(is_markdown_document(json.dumps(HEADER)))

    def test_json_array_counts_as_text(self):
        self.assertTrue(is_markdown_document("[1, 2, 3]"))


class TestHelpers(unittest.TestCase):

    def test_parse_json_object(self):
        self.assertEqual(parse_json_object('{"a": 1}'), {"a": 1})
        self.assertIsNone(parse_json_object("[1]"))
        self.assertIsNone(parse_json_object("nope"))

    def test_render_decision(self):
        self.assertEqual(should_enqueue_render(OutputType.MARKDOWN_DOCUMENT), (True, "is_markdown"))
        self.assertEqual(should_enqueue_render(OutputType.HEADER_CONTEXT), (False, "is_json"))


if __name__ == "__main__":
    unittest.main()
