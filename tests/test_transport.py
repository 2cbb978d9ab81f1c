import unittest
from unittest import mock

import requests

from plannersync.errors import NetworkError
from plannersync.transport import RequestsTransport


def _response(status: int = 200, text: str = "") -> mock.Mock:
    response = mock.Mock()
    response.status_code = status
    response.text = text
    response.encoding = None
    response.headers = {"ETag": '"1"'}
    return response


class RequestsTransportTests(unittest.TestCase):
    def setUp(self) -> None:
        self.transport = RequestsTransport("me@example.com", "app-pass", timeout_seconds=5)

    def test_only_caller_headers_are_sent(self) -> None:
        with mock.patch.object(requests.Session, "request", return_value=_response(404)) as request:
            result = self.transport.request("DELETE", "https://example.com/cal/x.ics")
        self.assertEqual(request.call_args.kwargs["headers"], {})
        self.assertIsNone(request.call_args.kwargs["data"])
        self.assertEqual(request.call_args.kwargs["timeout"], 5)
        self.assertEqual(result.status, 404)

    def test_body_is_utf8_and_headers_pass_through(self) -> None:
        with mock.patch.object(requests.Session, "request", return_value=_response(201)) as request:
            result = self.transport.request(
                "PUT",
                "https://example.com/cal/x.ics",
                headers={"Content-Type": "text/calendar; charset=utf-8"},
                body="SUMMARY:Café",
            )
        self.assertEqual(request.call_args.kwargs["headers"], {"Content-Type": "text/calendar; charset=utf-8"})
        self.assertEqual(request.call_args.kwargs["data"], "SUMMARY:Café".encode("utf-8"))
        self.assertEqual(result.headers, {"ETag": '"1"'})

    def test_transport_failure_is_network_error(self) -> None:
        with mock.patch.object(requests.Session, "request", side_effect=requests.ConnectionError("refused")):
            with self.assertLogs("plannersync.transport", level="WARNING"):
                with self.assertRaises(NetworkError):
                    self.transport.request("GET", "https://example.com/cal/x.ics")


if __name__ == "__main__":
    unittest.main()
