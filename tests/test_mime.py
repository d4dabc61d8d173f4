"""Tests for attachment descriptors, cid substitution and raw MIME parsing."""

import pytest

from mailsync.core.errors import InvalidMessageError
from mailsync.mime import (
    Attachment,
    apply_inline_attachments,
    buffer_to_data_url,
    decode_mime_header,
    generate_attachment_name,
    map_server_attachments,
    parse_raw_message,
    sanitize_attachments,
)

MULTIPART_SOURCE = """\
From: Bob <bob@example.com>
To: alice@example.com
Subject: =?UTF-8?B?SGVsbG8gd29ybGQ=?=
Message-ID: <abc123@example.com>
MIME-Version: 1.0
Content-Type: multipart/related; boundary="BOUNDARY"

--BOUNDARY
Content-Type: text/html; charset="utf-8"

<p>Logo: <img src="cid:logo@example.com"></p>
--BOUNDARY
Content-Type: image/png
Content-ID: <logo@example.com>
Content-Disposition: inline
Content-Transfer-Encoding: base64

iVBORw0KGgo=
--BOUNDARY
Content-Type: application/pdf
Content-Disposition: attachment; filename="report.pdf"
Content-Transfer-Encoding: base64

JVBERi0xLjQ=
--BOUNDARY--
"""

PLAIN_SOURCE = """\
From: bob@example.com
Subject: Plain
Content-Type: text/plain; charset="utf-8"

Line one
<b>not bold</b>
"""


class TestGenerateAttachmentName:
    """Tests for fallback attachment names."""

    def test_name_from_content_id(self) -> None:
        """Test that the cid local part and subtype form the name."""
        item = {"contentId": "<logo@example.com>", "contentType": "image/png"}
        assert generate_attachment_name(item) == "logo.png"

    def test_name_without_content_id(self) -> None:
        """Test the generic fallback."""
        assert generate_attachment_name({"contentType": "text/calendar; method=REQUEST"}) == (
            "attachment.calendar"
        )
        assert generate_attachment_name({}) == "attachment.bin"


class TestSanitizeAttachments:
    """Tests for attachment normalization."""

    def test_accepts_camel_and_snake_case(self) -> None:
        """Test that server and cache key styles map to the same record."""
        camel = sanitize_attachments(
            [{"filename": "a.pdf", "contentType": "application/pdf", "contentId": "<x@y>"}]
        )
        snake = sanitize_attachments(
            [{"filename": "a.pdf", "content_type": "application/pdf", "content_id": "x@y"}]
        )
        assert camel == snake
        assert camel[0].content_id == "x@y"
        assert camel[0].is_inline is True

    def test_data_content_becomes_href(self) -> None:
        """Test that a data URL in content is used as the href."""
        [att] = sanitize_attachments([{"name": "i.png", "content": "data:image/png;base64,AA"}])
        assert att.href == "data:image/png;base64,AA"

    def test_skips_non_mappings(self) -> None:
        """Test that junk entries are dropped."""
        assert sanitize_attachments([None, "x", 3]) == []  # type: ignore[list-item]
        assert sanitize_attachments(None) == []

    def test_cache_round_trip(self) -> None:
        """Test that descriptors survive to_dict and back."""
        original = Attachment(name="a.txt", filename="a.txt", content_type="text/plain", size=3)
        assert sanitize_attachments([original.to_dict()]) == [original]


class TestMapServerAttachments:
    """Tests for mapping detail-response attachments."""

    def test_server_url_wins(self) -> None:
        """Test that a server URL is used as href and needs no download."""
        [att] = map_server_attachments(
            [{"filename": "r.pdf", "url": "https://files/r.pdf", "contentType": "application/pdf"}]
        )
        assert att.href == "https://files/r.pdf"
        assert att.needs_download is False

    def test_inline_content_becomes_data_url(self) -> None:
        """Test that inline parts shipping content get a data URL."""
        [att] = map_server_attachments(
            [{"cid": "img1", "content": "QUJD", "contentType": "image/gif"}]
        )
        assert att.href == "data:image/gif;base64,QUJD"
        assert att.name == "img1.gif"
        assert att.size == 4

    def test_regular_attachment_needs_download(self) -> None:
        """Test that non-inline attachments without url need a download."""
        [att] = map_server_attachments(
            [{"filename": "big.zip", "size": 1024, "content": "AAAA"}]
        )
        assert att.href is None
        assert att.needs_download is True
        assert att.size == 1024


class TestApplyInlineAttachments:
    """Tests for cid: substitution."""

    def test_replaces_known_cids(self) -> None:
        """Test that matching cids are swapped, unknown ones kept."""
        attachments = [
            Attachment(name="a.png", filename="a.png", content_id="A@x", href="data:image/png;a")
        ]
        body = '<img src="cid:a@x"><img src="cid:missing">'
        result = apply_inline_attachments(body, attachments)
        assert 'src="data:image/png;a"' in result
        assert 'src="cid:missing"' in result

    def test_no_inline_attachments(self) -> None:
        """Test that a body without usable attachments is returned unchanged."""
        assert apply_inline_attachments("<p>x</p>", []) == "<p>x</p>"
        assert apply_inline_attachments(None, []) == ""

    def test_buffer_to_data_url(self) -> None:
        """Test encoding bytes and passing through existing data URLs."""
        assert buffer_to_data_url(b"ABC", "text/plain") == "data:text/plain;base64,QUJD"
        assert buffer_to_data_url("data:x", None) == "data:x"
        assert buffer_to_data_url("QUJD", None) == "data:application/octet-stream;base64,QUJD"


class TestDecodeMimeHeader:
    """Tests for RFC 2047 header decoding."""

    def test_encoded_word(self) -> None:
        """Test that a base64 encoded word decodes."""
        assert decode_mime_header("=?UTF-8?B?SGVsbG8gd29ybGQ=?=") == "Hello world"

    def test_plain_value_unchanged(self) -> None:
        """Test that plain headers pass through."""
        assert decode_mime_header("Hello") == "Hello"
        assert decode_mime_header(None) == ""


class TestParseRawMessage:
    """Tests for parse_raw_message()."""

    def test_multipart_with_inline_image(self) -> None:
        """Test html body, inline cid substitution and a download attachment."""
        parsed = parse_raw_message(MULTIPART_SOURCE)

        assert "cid:logo@example.com" not in parsed.body
        assert "data:image/png;base64," in parsed.body
        assert parsed.subject == "Hello world"
        assert parsed.header_message_id == "abc123@example.com"

        by_name = {att.filename: att for att in parsed.attachments}
        assert by_name["logo.png"].is_inline is True
        assert by_name["report.pdf"].needs_download is True
        assert by_name["report.pdf"].href is None
        assert parsed.text_content.startswith("Logo:")

    def test_plain_text_is_escaped_into_html(self) -> None:
        """Test that a text-only message is escaped, never interpreted."""
        parsed = parse_raw_message(PLAIN_SOURCE)
        assert "&lt;b&gt;not bold&lt;/b&gt;" in parsed.body
        assert "<br>" in parsed.body
        assert parsed.text_content.startswith("Line one")
        assert parsed.attachments == []

    def test_existing_attachments_fill_hrefs(self) -> None:
        """Test that known descriptors supply hrefs for download parts."""
        existing = [{"filename": "report.pdf", "href": "https://files/report.pdf"}]
        parsed = parse_raw_message(MULTIPART_SOURCE, existing)
        report = next(att for att in parsed.attachments if att.filename == "report.pdf")
        assert report.href == "https://files/report.pdf"
        assert report.needs_download is False

    @pytest.mark.parametrize("raw", ["", "   ", "just some text without headers"])
    def test_invalid_sources(self, raw: str) -> None:
        """Test that unparseable input raises InvalidMessageError."""
        with pytest.raises(InvalidMessageError):
            parse_raw_message(raw)
