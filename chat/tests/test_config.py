import logging
import os
import unittest
from unittest import mock

from retriva_chat.config import ChatConfig, load_chat_config_from_env


class ChatConfigTests(unittest.TestCase):
    def test_defaults(self):
        with mock.patch.dict(os.environ, {}, clear=True):
            config = load_chat_config_from_env()
        self.assertEqual(config, ChatConfig())
        self.assertEqual(config.typing_idle_seconds, 2.0)
        self.assertEqual(config.broadcast_id, "global")
        self.assertEqual(config.broadcast_title, "Campus Community")
        self.assertFalse(config.uploads_enabled)
        self.assertEqual(config.log_level_value, logging.INFO)

    def test_overrides(self):
        env = {
            "CHAT_TYPING_IDLE_MS": "1500",
            "CHAT_PRESENCE_HEARTBEAT_S": "15",
            "CHAT_BROADCAST_ID": "campus-hub",
            "CHAT_BROADCAST_TITLE": " Dorm Market ",
            "CHAT_UPLOAD_URL": "https://upload.example/v1/image/upload",
            "CHAT_UPLOAD_PRESET": "campus",
            "CHAT_UPLOAD_TIMEOUT_S": "5",
            "CHAT_LOG_LEVEL": "debug",
        }
        with mock.patch.dict(os.environ, env, clear=True):
            config = load_chat_config_from_env()
        self.assertEqual(config.typing_idle_seconds, 1.5)
        self.assertEqual(config.presence_heartbeat_s, 15)
        self.assertEqual(config.broadcast_id, "campus-hub")
        self.assertEqual(config.broadcast_title, "Dorm Market")
        self.assertTrue(config.uploads_enabled)
        self.assertEqual(config.upload_preset, "campus")
        self.assertEqual(config.upload_timeout_s, 5)
        self.assertEqual(config.log_level_value, logging.DEBUG)

    def test_blank_values_fall_back(self):
        with mock.patch.dict(os.environ, {"CHAT_TYPING_IDLE_MS": "", "CHAT_BROADCAST_ID": "   "}, clear=True):
            config = load_chat_config_from_env()
        self.assertEqual(config.typing_idle_ms, 2000)
        self.assertEqual(config.broadcast_id, "global")

    def test_invalid_values_name_the_variable(self):
        cases = {
            "CHAT_TYPING_IDLE_MS": "soon",
            "CHAT_PRESENCE_HEARTBEAT_S": "0",
            "CHAT_UPLOAD_TIMEOUT_S": "-1",
            "CHAT_LOG_LEVEL": "LOUD",
        }
        for name, value in cases.items():
            with self.subTest(name=name):
                with mock.patch.dict(os.environ, {name: value}, clear=True):
                    with self.assertRaisesRegex(ValueError, name):
                        load_chat_config_from_env()


if __name__ == "__main__":
    unittest.main()
