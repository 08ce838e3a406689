#!/usr/bin/env python3
"""
Test suite for request/response value types and response serialization
"""
import unittest

from embedserver.core.errors import InvalidResponse, MalformedRequest
from embedserver.core.models import Headers, Method, Request, Response, error_response


class TestHeaders(unittest.TestCase):
    def test_case_insensitive_lookup(self):
        headers = Headers([('Content-Type', 'text/plain'), ('X-Token', 'abc')])
        self.assertEqual(headers['content-type'], 'text/plain')
        self.assertEqual(headers['X-TOKEN'], 'abc')
        self.assertIn('x-token', headers)
        self.assertNotIn('missing', headers)

    def test_iteration_keeps_original_spelling(self):
        headers = Headers({'X-Custom-Header': '1'})
        self.assertEqual(list(headers), ['X-Custom-Header'])

    def test_repeated_headers_are_folded(self):
        headers = Headers([('Accept', 'text/html'), ('accept', 'application/json')])
        self.assertEqual(headers['Accept'], 'text/html, application/json')
        self.assertEqual(len(headers), 1)
        self.assertEqual(len(headers.raw()), 2)


class TestRequest(unittest.TestCase):
    def test_request_is_immutable(self):
        request = Request(method='GET', path='/ping')
        with self.assertRaises(AttributeError):
            request.path = '/other'
        with self.assertRaises(TypeError):
            request.query['a'] = 'b'

    def test_method_is_coerced(self):
        request = Request(method='post', path='/')
        self.assertIs(request.method, Method.POST)

    def test_unknown_method_is_malformed(self):
        with self.assertRaises(MalformedRequest) as cm:
            Request(method='BREW', path='/')
        self.assertEqual(cm.exception.status, 501)

    def test_with_path_params_returns_copy(self):
        request = Request(method='GET', path='/users/7', headers={'Host': 'x'})
        bound = request.with_path_params({'id': '7'})
        self.assertEqual(bound.path_params['id'], '7')
        self.assertEqual(request.path_params, {})
        self.assertEqual(bound.request_id, request.request_id)
        self.assertEqual(bound.header('host'), 'x')

    def test_json_body(self):
        request = Request(method='POST', path='/', body=b'{"a": 1}')
        self.assertEqual(request.json(), {'a': 1})
        self.assertEqual(request.text, '{"a": 1}')


class TestResponseSerialization(unittest.TestCase):
    def test_serialize_adds_framing_headers(self):
        response = Response(200, [('X-Test', '1')], b'pong')
        self.assertEqual(
            response.serialize(keep_alive=False),
            b'HTTP/1.1 200 OK\r\n'
            b'X-Test: 1\r\n'
            b'Content-Length: 4\r\n'
            b'Connection: close\r\n'
            b'\r\n'
            b'pong'
        )

    def test_serialize_keep_alive(self):
        data = Response(200, [], b'').serialize(keep_alive=True)
        self.assertIn(b'Connection: keep-alive\r\n', data)
        self.assertIn(b'Content-Length: 0\r\n', data)

    def test_handler_headers_are_not_duplicated(self):
        response = Response(200, [('Content-Length', '2'), ('Connection', 'close')], b'ok')
        data = response.serialize(keep_alive=True)
        self.assertEqual(data.count(b'Content-Length'), 1)
        self.assertEqual(data.count(b'Connection'), 1)
        self.assertTrue(response.wants_close)

    def test_head_omits_body(self):
        data = Response.text('pong').serialize(head=True)
        self.assertTrue(data.endswith(b'\r\n\r\n'))
        self.assertIn(b'Content-Length: 4\r\n', data)
        self.assertNotIn(b'pong', data)

    def test_no_content_has_no_length(self):
        data = Response(204).serialize()
        self.assertTrue(data.startswith(b'HTTP/1.1 204 No Content\r\n'))
        self.assertNotIn(b'Content-Length', data)

    def test_invalid_status(self):
        for status in (99, 600, '200', True):
            with self.subTest(status=status):
                with self.assertRaises(InvalidResponse):
                    Response(status).serialize()

    def test_invalid_header_name(self):
        for name in ('', 'Bad Header', 'X-\x01', 'X:Y'):
            with self.subTest(name=name):
                with self.assertRaises(InvalidResponse):
                    Response(200, [(name, 'v')]).serialize()

    def test_invalid_header_value(self):
        with self.assertRaises(InvalidResponse):
            Response(200, [('X-Test', 'a\r\nInjected: 1')]).serialize()
        # horizontal tab is allowed
        Response(200, [('X-Test', 'a\tb')]).serialize()

    def test_mismatched_content_length(self):
        with self.assertRaises(InvalidResponse):
            Response(200, [('Content-Length', '10')], b'short').serialize()

    def test_transfer_encoding_rejected(self):
        with self.assertRaises(InvalidResponse):
            Response(200, [('Transfer-Encoding', 'chunked')], b'x').serialize()

    def test_body_on_no_content_rejected(self):
        with self.assertRaises(InvalidResponse):
            Response(204, [], b'x').serialize()

    def test_constructors(self):
        self.assertEqual(Response.json({'a': 1}).body, b'{"a":1}')
        self.assertEqual(Response.json({}).get_header('content-type'), 'application/json')
        self.assertEqual(Response(body='héllo').body, 'héllo'.encode('utf-8'))

        response = error_response(405, [('Allow', 'GET')])
        self.assertEqual(response.status, 405)
        self.assertEqual(response.body, b'Method Not Allowed')
        self.assertEqual(response.get_header('Allow'), 'GET')


if __name__ == '__main__':
    unittest.main()
