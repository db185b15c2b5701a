import unittest
from unittest.mock import patch

from fastapi import APIRouter, FastAPI
from fastapi.testclient import TestClient

from mentor_platform.config import settings
from mentor_platform.main import slow_request_logger
from mentor_platform.request_context import current_endpoint, current_request_id
from mentor_platform.route_logging import EndpointNameRoute


class RequestLoggingTests(unittest.TestCase):
    @classmethod
    def setUpClass(cls):
        router = APIRouter(prefix='/api/ping', route_class=EndpointNameRoute)

        @router.get('')
        def ping():
            return {'data': {'endpoint': current_endpoint.get(), 'request_id': current_request_id.get()}}

        app = FastAPI()
        app.middleware('http')(slow_request_logger)
        app.include_router(router)
        cls.client = TestClient(app)

    @classmethod
    def tearDownClass(cls):
        cls.client.close()

    def test_request_id_is_echoed_and_visible_to_the_handler(self):
        res = self.client.get('/api/ping', headers={'X-Request-Id': 'req-abc123'})
        self.assertEqual(res.headers['X-Request-Id'], 'req-abc123')
        self.assertEqual(res.json()['data'], {'endpoint': 'GET /api/ping', 'request_id': 'req-abc123'})
        self.assertEqual(current_request_id.get(), '-')

    def test_generated_request_id_when_header_missing(self):
        res = self.client.get('/api/ping')
        self.assertEqual(len(res.headers['X-Request-Id']), 12)

    def test_slow_request_line_carries_request_id(self):
        with patch.object(settings, 'metrics_slow_ms', 0):
            with self.assertLogs('mentor_platform.request', level='INFO') as logs:
                self.client.get('/api/ping', headers={'X-Request-Id': 'req-slow'})
        self.assertTrue(any('request_slow path=/api/ping' in line for line in logs.output))
        self.assertTrue(any('request_id=req-slow' in line for line in logs.output))


if __name__ == '__main__':
    unittest.main()
