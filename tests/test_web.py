#!/usr/bin/env python3
"""
Tests for the CBR2PDF web interface
Uses the Flask and Flask-SocketIO test clients
"""

import io
import json
import os
import shutil
import sys
import tempfile
import unittest
import zipfile
from pathlib import Path

from PIL import Image

ROOT = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
sys.path.insert(0, os.path.join(ROOT, 'src'))
sys.path.insert(0, os.path.join(ROOT, 'web'))

import app as web_app


def create_cbz(path, page_count=2):
    with zipfile.ZipFile(path, 'w') as archive:
        for i in range(page_count):
            buffer = io.BytesIO()
            Image.new('RGB', (60, 80), (i * 50, 0, 0)).save(buffer, 'JPEG', dpi=(72, 72))
            archive.writestr(f"page{i}.jpg", buffer.getvalue())


class WebTestCase(unittest.TestCase):

    def setUp(self):
        self.temp_dir = Path(tempfile.mkdtemp())
        self.library = self.temp_dir / "comics"
        self.library.mkdir()
        self.settings_file = self.temp_dir / "settings.json"
        web_app.app.config['SETTINGS_FILE'] = str(self.settings_file)
        web_app.app.config['TESTING'] = True
        web_app.current_batch.update(running=False, directory=None, progress=0, failed={}, thread=None)
        self.client = web_app.app.test_client()

    def tearDown(self):
        thread = web_app.current_batch.get('thread')
        if thread is not None:
            thread.join(timeout=60)
        shutil.rmtree(self.temp_dir, ignore_errors=True)


class TestSettings(WebTestCase):
    """Test remembered directory and page selection"""

    def test_defaults_without_file(self):
        response = self.client.get('/settings')
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.get_json(), {'last_directory': '', 'page_selection': 'keep-all'})

    def test_update_persists(self):
        response = self.client.post('/settings', json={'last_directory': str(self.library),
                                                       'page_selection': 'drop-last'})
        self.assertEqual(response.status_code, 200)

        saved = json.loads(self.settings_file.read_text())
        self.assertEqual(saved['last_directory'], str(self.library))
        self.assertEqual(saved['page_selection'], 'drop-last')
        self.assertEqual(self.client.get('/settings').get_json(), saved)

    def test_rejects_unknown_page_selection(self):
        response = self.client.post('/settings', json={'page_selection': 'drop-first'})
        self.assertEqual(response.status_code, 400)

    def test_corrupt_settings_file(self):
        self.settings_file.write_text("{not json")
        self.assertEqual(self.client.get('/settings').get_json()['page_selection'], 'keep-all')

    def test_index_prefills_directory(self):
        self.settings_file.write_text(json.dumps({'last_directory': str(self.library)}))
        response = self.client.get('/')
        self.assertEqual(response.status_code, 200)
        self.assertIn(str(self.library), response.get_data(as_text=True))


class TestConvert(WebTestCase):
    """Test starting a batch from the web interface"""

    def test_missing_directory(self):
        response = self.client.post('/convert', json={})
        self.assertEqual(response.status_code, 400)

    def test_nonexistent_directory(self):
        response = self.client.post('/convert', json={'directory': str(self.temp_dir / "nope")})
        self.assertEqual(response.status_code, 400)

    def test_invalid_quality(self):
        response = self.client.post('/convert', json={'directory': str(self.library), 'quality': 'high'})
        self.assertEqual(response.status_code, 400)
        response = self.client.post('/convert', json={'directory': str(self.library), 'quality': 150})
        self.assertEqual(response.status_code, 400)

    def test_conflict_while_running(self):
        web_app.current_batch['running'] = True
        response = self.client.post('/convert', json={'directory': str(self.library)})
        self.assertEqual(response.status_code, 409)

    def test_batch_runs_and_reports(self):
        create_cbz(self.library / "book.cbz")
        (self.library / "broken.cbr").write_bytes(b"garbage")
        socket_client = web_app.socketio.test_client(web_app.app)
        socket_client.get_received()

        response = self.client.post('/convert', data={'directory': str(self.library),
                                                      'page_selection': 'drop-last'})
        self.assertEqual(response.status_code, 200)
        web_app.current_batch['thread'].join(timeout=60)

        self.assertTrue((self.library / "book.pdf").exists())
        self.assertFalse((self.library / "broken.pdf").exists())

        status = self.client.get('/status').get_json()
        self.assertFalse(status['running'])
        self.assertEqual(status['progress'], 100)
        self.assertEqual(list(status['failed']), [str(self.library / "broken.cbr")])

        saved = json.loads(self.settings_file.read_text())
        self.assertEqual(saved['last_directory'], str(self.library))
        self.assertEqual(saved['page_selection'], 'drop-last')

        received = socket_client.get_received()
        names = [message['name'] for message in received]
        self.assertIn('progress_update', names)
        self.assertIn('log_line', names)
        complete = [m for m in received if m['name'] == 'batch_complete']
        self.assertEqual(len(complete), 1)
        self.assertEqual(complete[0]['args'][0]['converted'], 1)
        self.assertEqual(complete[0]['args'][0]['total'], 2)
        socket_client.disconnect()


class TestSameOrigin(WebTestCase):
    """Test that pages from other sites cannot drive the interface"""

    FOREIGN = {'Origin': 'http://evil.example'}

    def test_foreign_origin_cannot_convert(self):
        create_cbz(self.library / "book.cbz")
        response = self.client.post('/convert', json={'directory': str(self.library)},
                                    headers=self.FOREIGN)

        self.assertEqual(response.status_code, 403)
        self.assertIsNone(web_app.current_batch['thread'])
        self.assertFalse((self.library / "book.pdf").exists())

    def test_foreign_origin_cannot_change_settings(self):
        response = self.client.post('/settings', json={'last_directory': '/tmp'},
                                    headers=self.FOREIGN)

        self.assertEqual(response.status_code, 403)
        self.assertFalse(self.settings_file.exists())

    def test_own_origin_is_accepted(self):
        response = self.client.post('/settings', json={'page_selection': 'drop-last'},
                                    headers={'Origin': 'http://localhost'})

        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.get_json()['page_selection'], 'drop-last')


if __name__ == '__main__':
    unittest.main(verbosity=2)
