"""Tests for value normalisers, relaxed JSON decoding and evidence resolution."""

from __future__ import annotations

import pytest


class TestParseNumber:
    @pytest.mark.parametrize(
        "raw, expected",
        [
            ("1.234,56 €", 1234.56),
            ("1,234.56", 1234.56),
            ("CHF 1'234.50", 1234.5),
            ("12,5", 12.5),
            ("-42", -42.0),
            ("USD 7", 7.0),
        ],
    )
    def test_human_formats(self, raw, expected):
        from pipeline_runner.pipeline.normalize import parse_number

        assert parse_number(raw) == pytest.approx(expected)

    @pytest.mark.parametrize("raw", ["abc", "", "€", True, None, float("nan")])
    def test_indeterminate(self, raw):
        from pipeline_runner.pipeline.normalize import parse_number

        assert parse_number(raw) is None

    def test_plain_numbers(self):
        from pipeline_runner.pipeline.normalize import parse_number

        assert parse_number(3) == 3.0
        assert parse_number(2.5) == 2.5


class TestParseBool:
    @pytest.mark.parametrize("raw", ["Ja", "yes", " TRUE ", "y", "1", 1, True])
    def test_true(self, raw):
        from pipeline_runner.pipeline.normalize import parse_bool

        assert parse_bool(raw) is True

    @pytest.mark.parametrize("raw", ["nein", "No.", "false", "0", 0, False])
    def test_false(self, raw):
        from pipeline_runner.pipeline.normalize import parse_bool

        assert parse_bool(raw) is False

    @pytest.mark.parametrize("raw", ["vielleicht", "", 2, None, [True]])
    def test_indeterminate(self, raw):
        from pipeline_runner.pipeline.normalize import parse_bool

        assert parse_bool(raw) is None


class TestNormalizeStr:
    def test_collapses_and_trims(self):
        from pipeline_runner.pipeline.normalize import normalize_str

        assert normalize_str("  ACME  GmbH.; ") == "acme gmbh"


class TestRelaxedJSON:
    def test_fenced_object(self):
        from pipeline_runner.pipeline.json_relaxed import parse_json_relaxed

        assert parse_json_relaxed('```json\n{"a": 1}\n```') == {"a": 1}

    def test_object_inside_prose(self):
        from pipeline_runner.pipeline.json_relaxed import parse_json_relaxed

        text = 'Sure! Here it is: {"a": {"b": "}"}, "c": [1, 2]} Hope that helps.'
        assert parse_json_relaxed(text) == {"a": {"b": "}"}, "c": [1, 2]}

    def test_escaped_quote_in_string(self):
        from pipeline_runner.pipeline.json_relaxed import extract_first_balanced

        text = 'x {"q": "say \\"}\\" now"} y'
        assert extract_first_balanced(text) == '{"q": "say \\"}\\" now"}'

    def test_array(self):
        from pipeline_runner.pipeline.json_relaxed import parse_json_relaxed

        assert parse_json_relaxed("result: [1, 2, 3]") == [1, 2, 3]

    def test_bracketed_prose_before_object(self):
        from pipeline_runner.pipeline.json_relaxed import parse_json_relaxed

        text = 'Answer [see page 2]: {"value": "ACME GmbH"}'
        assert parse_json_relaxed(text) == {"value": "ACME GmbH"}

    @pytest.mark.parametrize("text", ["", "no json here", "{unbalanced"])
    def test_failure_raises(self, text):
        from pipeline_runner.pipeline.json_relaxed import RelaxedJSONError, parse_json_relaxed

        with pytest.raises(RelaxedJSONError):
            parse_json_relaxed(text)


class TestResolvePage:
    PAGES = {
        1: "Rechnung Nr. 4711",
        2: "Die Stadtwerke Muster-\nstadt GmbH stellen in Rechnung",
        3: "Gesamtbetrag 1.234,56 EUR",
    }

    def test_exact_quote(self):
        from pipeline_runner.pipeline.evidence import resolve_page

        assert resolve_page("Gesamtbetrag 1.234,56", None, self.PAGES) == (3, 1.0)

    def test_hyphenated_line_break(self):
        from pipeline_runner.pipeline.evidence import resolve_page

        page, score = resolve_page("Stadtwerke Musterstadt GmbH", None, self.PAGES)
        assert page == 2
        assert score == 1.0

    def test_value_used_without_quote(self):
        from pipeline_runner.pipeline.evidence import resolve_page

        assert resolve_page(None, "Nr. 4711", self.PAGES)[0] == 1

    def test_short_or_unknown_needle(self):
        from pipeline_runner.pipeline.evidence import resolve_page

        assert resolve_page("EUR", None, self.PAGES) is None
        assert resolve_page("completely unrelated sentence", None, self.PAGES) is None
