import hashlib
import hmac
import json
import os
import threading
import time
import uuid
from typing import Any, Dict, List, Optional


class AuditTrail:
    """
    Hash-chained record of what a scan did: every job admission and outcome.
    Each entry carries the previous hash, so editing or dropping an entry
    breaks the chain. The run is closed with an HMAC over the final hash.
    """

    def __init__(self, run_id: Optional[str] = None, log_file: Optional[str] = None):
        self.run_id = run_id or str(uuid.uuid4())
        self.start_time = time.time()
        self.chain_hash = hashlib.sha256(self.run_id.encode()).hexdigest()
        self.log_file = log_file
        self.events: List[Dict[str, Any]] = []
        # Per-run key; the signature proves integrity within this process only
        self.session_key = os.urandom(32).hex()
        self._lock = threading.Lock()

        self.log_event("RUN_START", {"timestamp": self.start_time, "run_id": self.run_id})

    def log_event(self, event_type: str, data: Dict[str, Any]) -> str:
        with self._lock:
            entry = {
                "type": event_type,
                "timestamp": time.time(),
                "data": data,
                "prev_hash": self.chain_hash,
            }
            entry_str = json.dumps(entry, sort_keys=True, default=str)
            self.chain_hash = hashlib.sha256((self.chain_hash + entry_str).encode()).hexdigest()
            entry["current_hash"] = self.chain_hash
            self.events.append(entry)

            if self.log_file:
                with open(self.log_file, "a", encoding="utf-8") as f:
                    f.write(json.dumps(entry, default=str) + "\n")
            return self.chain_hash

    def verify(self) -> bool:
        """Recomputes the chain from the recorded events."""
        with self._lock:
            events = list(self.events)
        chain = hashlib.sha256(self.run_id.encode()).hexdigest()
        for entry in events:
            body = {k: entry[k] for k in ("type", "timestamp", "data", "prev_hash")}
            if body["prev_hash"] != chain:
                return False
            chain = hashlib.sha256((chain + json.dumps(body, sort_keys=True, default=str)).encode()).hexdigest()
            if entry["current_hash"] != chain:
                return False
        return True

    def sign_run(self) -> Dict[str, Any]:
        integrity_blob = f"{self.run_id}:{self.start_time}:{self.chain_hash}"
        signature = hmac.new(self.session_key.encode(), integrity_blob.encode(), hashlib.sha256).hexdigest()
        self.log_event("RUN_COMPLETE", {"signature": signature, "final_hash": self.chain_hash})
        return {
            "run_id": self.run_id,
            "final_hash": self.chain_hash,
            "signature": signature,
            "audit_file": self.log_file,
        }
