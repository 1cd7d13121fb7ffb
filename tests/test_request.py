# pyright: reportUnknownMemberType=false
import dataclasses
import io

import pytest

from httpagent.networking.errors import ConfigurationError
from httpagent.networking.request import (
    HttpMethod,
    RequestDescriptor,
    append_query,
    encode_form,
    encode_query,
)
from httpagent.networking.tls import TrustMode


def test_descriptor_defaults():
    descriptor = RequestDescriptor(url="http://example.com")

    assert descriptor.method is HttpMethod.GET
    assert dict(descriptor.headers) == {}
    assert dict(descriptor.params) == {}
    assert descriptor.body is None
    assert descriptor.trust == TrustMode.none()
    assert not descriptor.use_tls
    assert descriptor.encode_params
    assert descriptor.accept_gzip
    assert descriptor.payload_charset == "UTF-8"


def test_descriptor_accepts_method_names():
    assert RequestDescriptor(url="http://x", method="post").method is HttpMethod.POST


def test_descriptor_rejects_unsupported_method():
    with pytest.raises(ConfigurationError):
        RequestDescriptor(url="http://x", method="PATCH")


def test_descriptor_rejects_empty_url():
    with pytest.raises(ConfigurationError):
        RequestDescriptor(url="  ")


def test_descriptor_rejects_non_positive_timeouts():
    with pytest.raises(ValueError):
        RequestDescriptor(url="http://x", connect_timeout_seconds=0)
    with pytest.raises(ValueError):
        RequestDescriptor(url="http://x", read_timeout_seconds=-2)


def test_descriptor_is_frozen():
    descriptor = RequestDescriptor(url="http://x")

    with pytest.raises(dataclasses.FrozenInstanceError):
        descriptor.url = "http://y"  # type: ignore[misc]


def test_descriptor_copies_and_freezes_mappings():
    headers = {"X-Trace": "1"}
    params = {"q": "term"}
    descriptor = RequestDescriptor(url="http://x", headers=headers, params=params)
    headers["X-Trace"] = "2"
    params["q"] = "other"

    assert descriptor.headers["X-Trace"] == "1"
    assert descriptor.params["q"] == "term"
    with pytest.raises(TypeError):
        descriptor.headers["X-Trace"] = "3"  # type: ignore[index]


def test_trust_all_descriptor_uses_tls():
    descriptor = RequestDescriptor(url="https://x", trust=TrustMode.trust_all())

    assert descriptor.use_tls


def test_encode_query_uses_percent_twenty_for_spaces():
    assert encode_query({"q": "a b", "x": "&="}) == "q=a%20b&x=%26%3D"


def test_encode_query_expands_sequences_and_skips_none():
    assert encode_query({"id": [1, 2], "skip": None}) == "id=1&id=2"


def test_encode_query_without_encoding_joins_verbatim():
    assert encode_query({"filter": "a b|c"}, encode=False) == "filter=a b|c"


def test_encode_form_uses_plus_for_spaces():
    assert encode_form({"name": "a b", "city": "Zürich"}) == (
        b"name=a+b&city=Z%C3%BCrich"
    )


def test_encode_form_honours_charset():
    assert encode_form({"city": "Zürich"}, charset="ISO-8859-1") == (
        b"city=Z%FCrich"
    )


def test_append_query_keeps_existing_query():
    assert append_query("http://x/p?a=1#frag", "b=2") == "http://x/p?a=1&b=2#frag"
    assert append_query("http://x/p", "") == "http://x/p"


def test_get_params_go_to_query_string():
    descriptor = RequestDescriptor(
        url="http://x/search", params={"q": "a b"}
    )

    assert descriptor.target_url() == "http://x/search?q=a%20b"
    assert descriptor.payload() is None
    assert "Content-Type" not in descriptor.wire_headers()


def test_delete_params_go_to_query_string():
    descriptor = RequestDescriptor(
        url="http://x/items/1", method=HttpMethod.DELETE, params={"force": True}
    )

    assert descriptor.target_url() == "http://x/items/1?force=True"


def test_post_params_become_form_body():
    descriptor = RequestDescriptor(
        url="http://x/form", method=HttpMethod.POST, params={"a": "1 2"}
    )

    assert descriptor.target_url() == "http://x/form"
    assert descriptor.payload() == b"a=1+2"
    assert descriptor.wire_headers()["Content-Type"] == (
        "application/x-www-form-urlencoded; charset=UTF-8"
    )


def test_body_takes_precedence_and_params_move_to_query():
    descriptor = RequestDescriptor(
        url="http://x/items",
        method=HttpMethod.PUT,
        params={"v": "2"},
        body='{"a": 1}',
        content_type="application/json",
    )

    assert descriptor.target_url() == "http://x/items?v=2"
    assert descriptor.payload() == b'{"a": 1}'
    assert descriptor.wire_headers()["Content-Type"] == (
        "application/json; charset=UTF-8"
    )


def test_body_is_encoded_with_charset():
    descriptor = RequestDescriptor(
        url="http://x",
        method=HttpMethod.POST,
        body="café",
        charset="ISO-8859-1",
    )

    assert descriptor.payload() == b"caf\xe9"


def test_multipart_payload_keeps_params_as_fields():
    descriptor = RequestDescriptor(
        url="http://x/upload",
        method=HttpMethod.POST,
        params={"note": "hi"},
        files={"file": ("a.txt", io.BytesIO(b"data"))},
    )

    assert descriptor.payload() == {"note": "hi"}
    assert "Content-Type" not in descriptor.wire_headers()


def test_wire_headers_keep_caller_header_case():
    descriptor = RequestDescriptor(
        url="http://x", headers={"x-lower": "1", "X-Upper": "2"}
    )

    headers = descriptor.wire_headers()

    assert headers["x-lower"] == "1"
    assert headers["X-Upper"] == "2"


def test_wire_headers_negotiation():
    descriptor = RequestDescriptor(
        url="http://x", accept="application/json", accept_gzip=False
    )

    headers = descriptor.wire_headers()

    assert headers["Accept"] == "application/json"
    assert headers["Accept-Encoding"] == "identity"


def test_wire_headers_omit_empty_negotiation_values():
    descriptor = RequestDescriptor(url="http://x", accept="", content_type="")

    assert descriptor.wire_headers() == {"Accept-Encoding": "gzip"}


def test_content_type_with_declared_charset_is_kept():
    descriptor = RequestDescriptor(
        url="http://x",
        method=HttpMethod.POST,
        body="{}",
        content_type="application/json; charset=utf-8",
    )

    assert descriptor.wire_headers()["Content-Type"] == (
        "application/json; charset=utf-8"
    )
