"""
Reconciliation Anomaly Logging
Deposit/credit pipeline anomalies go to their own logger and file so they are
never mixed into normal operational output.
"""

import logging
import json
import os
from typing import Optional, Dict, Any

from config import Config
from utils.datetime_helpers import utcnow


class AnomalyLogger:
    """Structured, separately-routed log of anomalies needing admin review"""

    def __init__(self, log_dir: Optional[str] = None):
        self.logger = logging.getLogger("reconciliation_anomalies")
        self.log_dir = log_dir or Config.ANOMALY_LOG_DIR
        self._file_handler_ready = False

    def _setup_file_handler(self):
        """Attach the file handler lazily so importing never touches the filesystem"""
        if self._file_handler_ready:
            return
        self._file_handler_ready = True
        try:
            os.makedirs(self.log_dir, exist_ok=True)
            file_handler = logging.FileHandler(
                os.path.join(self.log_dir, "reconciliation_anomalies.log"),
                mode='a',
                encoding='utf-8'
            )
            file_handler.setFormatter(logging.Formatter('%(asctime)s - %(levelname)s - %(message)s'))
            self.logger.addHandler(file_handler)
        except OSError as e:
            logging.getLogger(__name__).warning(f"Failed to setup anomaly file logging: {e}")

    def record(
        self,
        anomaly_type: str,
        message: str,
        tx_hash: Optional[str] = None,
        user_id: Optional[int] = None,
        context: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        self._setup_file_handler()
        entry = {
            "timestamp": utcnow().isoformat(),
            "anomaly_type": anomaly_type,
            "message": message,
            "tx_hash": tx_hash,
            "user_id": user_id,
            "context": context or {},
        }
        self.logger.critical(json.dumps(entry, ensure_ascii=False, default=str))
        return entry


# Global instance
anomaly_logger = AnomalyLogger()
