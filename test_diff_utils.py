"""
Unit tests for diff_utils module.
"""

import pytest

from form_engine.attachment import LocalFile
from form_engine.diff_utils import _format_value, describe_change, has_changes, summarize_changes
from form_engine.field_descriptor import FieldDescriptor


class TestFormatValue:
    """Test class for value display."""

    @pytest.mark.parametrize("value,expected", [
        (None, "empty"),
        ("", "empty"),
        (True, "yes"),
        (False, "no"),
        (3.0, "3"),
        (2.5, "2.5"),
        (242.98000000000002, "242.98"),
        ("Summer", "Summer"),
        (7, "7"),
    ])
    def test_format_value(self, value, expected):
        assert _format_value(value) == expected

    def test_long_text_truncated(self):
        formatted = _format_value("x" * 100, max_length=20)

        assert len(formatted) == 20
        assert formatted.endswith("...")

    def test_local_file(self):
        assert _format_value(LocalFile("a.png", "image/png", b"")) == "new file a.png"

    def test_list_as_json(self):
        assert _format_value(["a", "b"]) == '["a", "b"]'


class TestDescribeChange:
    """Test class for single field change descriptions."""

    def test_scalar_change(self):
        assert describe_change("Summer", "Winter") == "Summer → Winter"
        assert describe_change(None, "ADS") == "empty → ADS"

    def test_removed_value(self):
        assert describe_change("https://cdn.example.com/a.png", None) == "removed"

    def test_new_file(self):
        file = LocalFile("winter.png", "image/png", b"")

        assert describe_change("https://cdn.example.com/a.png", file) == "replaced with winter.png"
        assert describe_change(None, file) == "winter.png added"

    def test_list_items_added(self):
        old = [{'page': 'HOME'}]
        new = [{'page': 'HOME'}, {'page': 'STORE'}]

        assert describe_change(old, new) == "1 item(s) added"

    def test_list_items_removed(self):
        assert describe_change(["a", "b", "c"], ["a"]) == "2 item(s) removed"

    def test_nested_value_changed(self):
        assert describe_change([{'page': 'HOME'}], [{'page': 'STORE'}]) == "1 value(s) changed"

    def test_list_from_nothing(self):
        assert describe_change(None, ["summer"]) == "1 item(s) added"


class TestSummarizeChanges:
    """Test class for form change summaries."""

    def setup_method(self):
        self.fields = [
            FieldDescriptor(name='altText', label='Alt Text'),
            FieldDescriptor(name='order', kind='number'),
            FieldDescriptor(name='keywords', kind='multi-select')
        ]

    def test_only_changed_fields_listed(self):
        original = {'altText': 'Summer', 'order': 1, 'keywords': []}
        current = {'altText': 'Winter', 'order': 1, 'keywords': ['sale']}

        changes = summarize_changes(original, current, self.fields)

        assert [change['field'] for change in changes] == ['altText', 'keywords']
        assert changes[0]['label'] == 'Alt Text'
        assert changes[0]['description'] == 'Summer → Winter'
        assert changes[1]['description'] == '1 item(s) added'
        assert changes[1]['old'] == []

    def test_no_changes(self):
        values = {'altText': 'Summer', 'order': 1, 'keywords': []}

        assert summarize_changes(values, dict(values), self.fields) == []

    def test_has_changes(self):
        assert has_changes({'a': 1}, {'a': 2})
        assert not has_changes({'a': 1}, {'a': 1})
        assert has_changes({}, {'a': 1})
        assert not has_changes({'a': 1, 'b': 1}, {'a': 1, 'b': 2}, fields=['a'])
