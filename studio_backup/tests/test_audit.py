import json
import unittest

from studio_backup import audit
from studio_backup.audit import AUDIT_LOGGER_NAME, LoggingAuditSink


class LoggingAuditSinkTests(unittest.TestCase):
    def test_events_are_json_lines(self):
        sink = LoggingAuditSink()
        with self.assertLogs(AUDIT_LOGGER_NAME, level="INFO") as captured:
            sink.log("backup_completed", {"backup_id": "j1"}, user_id="user-1")
            sink.log("backup_failed", {"backup_id": "j2"}, severity=audit.ERROR, user_id="user-1")

        first, second = captured.records
        payload = json.loads(first.getMessage())
        self.assertEqual(payload["action"], "backup_completed")
        self.assertEqual(payload["user_id"], "user-1")
        self.assertEqual(payload["resource_type"], "system")
        self.assertEqual(payload["details"], {"backup_id": "j1"})
        self.assertEqual(second.levelname, "ERROR")


if __name__ == "__main__":
    unittest.main()
