"""Tests for the bracket-notation query string codec."""

from urllib.parse import parse_qsl

from mefit_gateway.utils.querystring import (
    encode_nested_query,
    flatten_nested_query,
    parse_nested_query,
)


def _parse(qs: str, **kwargs):
    return parse_nested_query(parse_qsl(qs, keep_blank_values=True), **kwargs)


class TestParseNestedQuery:
    def test_flat(self):
        assert _parse("page=2&limit=10") == {"page": "2", "limit": "10"}

    def test_nested_mapping(self):
        assert _parse("filter[name]=Ana&filter[age]=30") == {"filter": {"name": "Ana", "age": "30"}}

    def test_operator_key_surfaces_as_mapping_key(self):
        assert _parse("filter[$where]=this.password") == {"filter": {"$where": "this.password"}}

    def test_empty_brackets_build_list(self):
        assert _parse("tags[]=a&tags[]=b") == {"tags": ["a", "b"]}

    def test_repeated_key_builds_list(self):
        assert _parse("tag=a&tag=b&tag=c") == {"tag": ["a", "b", "c"]}

    def test_list_of_mappings_merge(self):
        assert _parse("a[b][]=1&a[b][]=2&a[c]=3") == {"a": {"b": ["1", "2"], "c": "3"}}

    def test_blank_value_kept(self):
        assert _parse("q=") == {"q": ""}

    def test_empty_key_skipped(self):
        assert _parse("=orphan&ok=1") == {"ok": "1"}

    def test_leading_bracket_is_plain_key(self):
        assert _parse("[x]=1") == {"[x]": "1"}

    def test_depth_limit_keeps_remainder_verbatim(self):
        result = _parse("a[b][c]=1", depth=1)
        assert result == {"a": {"b": {"[c]": "1"}}}

    def test_parameter_limit(self):
        qs = "&".join(f"k{i}=v" for i in range(10))
        assert len(_parse(qs, parameter_limit=3)) == 3

    def test_unclosed_bracket_kept_in_key(self):
        assert _parse("a[b=1") == {"a": {"[b": "1"}}


class TestEncodeNestedQuery:
    def test_flatten_mapping_and_list(self):
        pairs = flatten_nested_query({"filter": {"name": "Ana"}, "tags": ["a", "b"]})
        assert pairs == [("filter[name]", "Ana"), ("tags[]", "a"), ("tags[]", "b")]

    def test_scalars(self):
        pairs = flatten_nested_query({"on": True, "off": False, "none": None, "n": 3})
        assert pairs == [("on", "true"), ("off", "false"), ("none", ""), ("n", "3")]

    def test_encode_quotes_brackets(self):
        assert encode_nested_query({"filter": {"name": "A B"}}) == "filter%5Bname%5D=A+B"

    def test_parse_of_encoded_mapping(self):
        data = {"filter": {"name": "Ana", "tags": ["x", "y"]}, "page": "1"}
        assert _parse(encode_nested_query(data)) == data
