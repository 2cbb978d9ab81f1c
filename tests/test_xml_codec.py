import unittest

from plannersync.errors import ProtocolParseError
from plannersync.xml_codec import (
    as_list,
    extract_href,
    extract_text,
    has_child,
    iter_response_props,
    parse_xml,
    response_props,
)

SINGLE_RESPONSE = """<?xml version="1.0" encoding="UTF-8"?>
<d:multistatus xmlns:d="DAV:" xmlns:cs="http://calendarserver.org/ns/">
  <d:response>
    <d:href>/123/calendars/home/</d:href>
    <d:propstat>
      <d:prop>
        <d:displayname>Home</d:displayname>
        <cs:getctag xmlns:cs="http://calendarserver.org/ns/">ctag-1</cs:getctag>
        <d:resourcetype><d:collection/><c:calendar xmlns:c="urn:ietf:params:xml:ns:caldav"/></d:resourcetype>
      </d:prop>
      <d:status>HTTP/1.1 200 OK</d:status>
    </d:propstat>
  </d:response>
</d:multistatus>"""


class XmlCodecTests(unittest.TestCase):
    def test_single_response_stays_bare_until_coerced(self) -> None:
        tree = parse_xml(SINGLE_RESPONSE)
        response = tree["multistatus"]["response"]
        self.assertIsInstance(response, dict)
        self.assertEqual(len(as_list(response)), 1)
        props = response_props(as_list(response)[0])
        self.assertEqual(extract_text(props["displayname"]), "Home")
        self.assertEqual(extract_text(props["getctag"]), "ctag-1")
        self.assertTrue(has_child(props["resourcetype"], "calendar"))

    def test_extract_text_shapes(self) -> None:
        self.assertEqual(extract_text(None), "")
        self.assertEqual(extract_text("plain"), "plain")
        self.assertEqual(extract_text({"#text": "value", "lang": "en"}), "value")
        self.assertEqual(extract_text({"lang": "en"}), "")

    def test_attribute_text_kept_under_text_key(self) -> None:
        tree = parse_xml('<a xmlns="DAV:"><b lang="es">hola</b></a>')
        self.assertEqual(tree["a"]["b"], {"lang": "es", "#text": "hola"})

    def test_as_list(self) -> None:
        self.assertEqual(as_list(None), [])
        self.assertEqual(as_list("x"), ["x"])
        self.assertEqual(as_list(["x", "y"]), ["x", "y"])

    def test_malformed_xml_raises_protocol_error(self) -> None:
        with self.assertRaises(ProtocolParseError):
            parse_xml("<multistatus><response></multistatus>")
        with self.assertRaises(ProtocolParseError):
            parse_xml("   ")

    def test_prefers_ok_propstat(self) -> None:
        tree = parse_xml(
            """<d:multistatus xmlns:d="DAV:"><d:response><d:href>/x/</d:href>
            <d:propstat><d:prop><d:getctag/></d:prop><d:status>HTTP/1.1 404 Not Found</d:status></d:propstat>
            <d:propstat><d:prop><d:displayname>Found</d:displayname></d:prop><d:status>HTTP/1.1 200 OK</d:status></d:propstat>
            </d:response></d:multistatus>"""
        )
        props = response_props(tree["multistatus"]["response"])
        self.assertEqual(extract_text(props.get("displayname")), "Found")

    def test_malformed_response_is_skipped(self) -> None:
        tree = parse_xml(
            """<d:multistatus xmlns:d="DAV:">
            <d:response><d:href>/broken/</d:href></d:response>
            <d:response><d:href>/ok/</d:href><d:propstat><d:prop><d:displayname>Ok</d:displayname></d:prop>
            <d:status>HTTP/1.1 200 OK</d:status></d:propstat></d:response>
            </d:multistatus>"""
        )
        with self.assertLogs("plannersync.xml_codec", level="WARNING"):
            items = list(iter_response_props(tree))
        self.assertEqual(len(items), 1)
        self.assertEqual(items[0][0], "/ok/")

    def test_extract_href_from_list(self) -> None:
        self.assertEqual(extract_href([{"href": "/a/"}, {"href": "/b/"}]), "/a/")
        self.assertEqual(extract_href(""), "")


if __name__ == "__main__":
    unittest.main()
