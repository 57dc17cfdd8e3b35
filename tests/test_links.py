import sys
import os

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from chatwarden.detectors.links import detect_from_text, extract_links, get_forbidden_links
from chatwarden.models import IncomingMessage, LinkedMessage
from chatwarden.utils.domain import canonical_link_key, clean_url_candidate, is_domain_allowed, normalize_domain


def make_message(text=None, **kwargs):
    return IncomingMessage(chat_id=-1, chat_type="chat", message_id=1, sender_id=2, text=text, **kwargs)


def test_clean_url_candidate_strips_wrapping_and_punctuation():
    assert clean_url_candidate("(https://example.com/a).") == "https://example.com/a"
    assert clean_url_candidate("«spam.example»,") == "spam.example"
    assert clean_url_candidate("https://en.wikipedia.org/wiki/Foo_(bar))") == "https://en.wikipedia.org/wiki/Foo_(bar)"


def test_normalize_domain():
    assert normalize_domain("HTTPS://Sub.Example.COM./path?q=1") == "sub.example.com"
    assert normalize_domain("пример.рф") == "xn--e1afmkfd.xn--p1ai"
    assert normalize_domain("") is None


def test_domain_allow_list_matches_subdomains_only():
    assert is_domain_allowed("example.com", ["example.com"])
    assert is_domain_allowed("docs.example.com", ["example.com"])
    assert not is_domain_allowed("badexample.com", ["example.com"])


def test_canonical_key_ignores_scheme_and_trailing_slash():
    assert canonical_link_key("https://example.com/a/") == canonical_link_key("example.com/a")


def test_detects_scheme_www_and_bare_domains():
    found = detect_from_text("see https://a.example/x, www.b.example and c.example/path!")
    assert found == ["https://a.example/x", "www.b.example", "c.example/path"]


def test_detects_idn_punycode_and_ipv4():
    assert "пример.рф" in detect_from_text("заходите на пример.рф")
    assert detect_from_text("go to xn--e1afmkfd.xn--p1ai now") == ["xn--e1afmkfd.xn--p1ai"]
    assert detect_from_text("panel at 10.0.0.1/admin") == ["10.0.0.1/admin"]
    assert detect_from_text("version 1.2.3.4 released") == []


def test_detects_html_href():
    found = detect_from_text('<a href="https://spam.example/x">click</a>')
    assert "https://spam.example/x" in found


def test_plain_text_has_no_links():
    assert detect_from_text("hello there, how are you? fine.") == []
    assert detect_from_text(None) == []


def test_media_hosting_urls_are_ignored():
    message = make_message(attachments=[{
        "type": "image",
        "url": "https://cdn.platform.example/img.jpg",
        "preview_url": "https://cdn.platform.example/thumb.jpg",
    }])
    assert extract_links(message) == []


def test_media_captions_are_scanned():
    message = make_message(attachments=[{"type": "video", "caption": "more at spam.example"}])
    links = extract_links(message)
    assert [(l.domain, l.source) for l in links] == [("spam.example", "attachment")]


def test_button_and_share_urls_are_detected():
    message = make_message(
        attachments=[{"type": "share", "url": "https://shared.example/post"}],
        markup=[{"type": "button", "text": "Open", "url": "https://button.example"}],
    )
    domains = sorted(l.domain for l in extract_links(message))
    assert domains == ["button.example", "shared.example"]


def test_links_deduplicated_by_domain_and_path():
    message = make_message("https://spam.example/a and spam.example/a/", url="http://spam.example/a")
    links = extract_links(message)
    assert len(links) == 1
    assert links[0].source == "text"


def test_linked_message_text_and_attachments():
    linked = LinkedMessage(text="forwarded from one.example",
                           attachments=[{"type": "file", "title": "see two.example"}])
    domains = sorted(l.domain for l in extract_links(make_message("look", linked=linked)))
    assert domains == ["one.example", "two.example"]


def test_forbidden_links_respect_whitelist():
    message = make_message("ok.example/page and bad.example/page")
    forbidden = get_forbidden_links(message, ["ok.example"])
    assert [l.domain for l in forbidden] == ["bad.example"]
