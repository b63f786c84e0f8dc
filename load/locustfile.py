"""
Locust load script for booking chat.

Simulates a dashboard user:
- Fetch the chat list (/api/v1/conversations)
- Poll the unread badge with ETag caching (/api/v1/messages/unread)
- Open a conversation's history, then poll deltas using after_id
- Occasionally send a message and mark the thread read

Configure with env vars:
- CHAT_BEARERS: CSV of pre-issued access tokens, or
- CHAT_TEST_EMAILS: CSV of account emails; tokens are minted locally with the
  same SECRET_KEY the server uses
- CHAT_SEND_RATIO: share of thread visits that also send a message (default 0.1)

Run:
  locust -f load/locustfile.py --host http://localhost:8000
"""

from __future__ import annotations

import logging
import os
import random
from typing import Dict, List, Optional

from locust import HttpUser, between, events, task

from booking_chat.api.auth import create_access_token


# --- Config -------------------------------------------------------------------

def _csv(name: str) -> List[str]:
    return [p.strip() for p in os.getenv(name, "").split(",") if p.strip()]


def _load_tokens() -> List[str]:
    bearers = _csv("CHAT_BEARERS")
    if bearers:
        return bearers
    return [create_access_token({"sub": email}) for email in _csv("CHAT_TEST_EMAILS")]


CHAT_TOKENS = _load_tokens()
SEND_RATIO = float(os.getenv("CHAT_SEND_RATIO", "0.1") or 0.1)


# --- Helpers ------------------------------------------------------------------

def _auth_header(token: Optional[str]) -> Dict[str, str]:
    return {"Authorization": f"Bearer {token}"} if token else {}


def _safe_json(resp):
    try:
        return resp.json()
    except ValueError:
        return {}


# --- The User Model -----------------------------------------------------------

class ChatUser(HttpUser):
    wait_time = between(1, 3)

    token: Optional[str] = None
    etag_unread: Optional[str] = None
    threads: List[int] = []
    last_ids: Dict[int, Optional[int]] = {}

    def on_start(self):
        if not CHAT_TOKENS:
            raise RuntimeError("Set CHAT_BEARERS or CHAT_TEST_EMAILS")
        self.token = random.choice(CHAT_TOKENS)
        self.threads = []
        self.last_ids = {}

    @task(4)
    def chat_list(self):
        r = self.client.get("/api/v1/conversations", headers=_auth_header(self.token), name="/conversations")
        if r.status_code != 200:
            return
        rows = _safe_json(r) or []
        self.threads = [int(row["booking_id"]) for row in rows if row.get("booking_id")]
        for bid in self.threads:
            self.last_ids.setdefault(bid, None)

    @task(6)
    def unread_badge(self):
        headers = _auth_header(self.token)
        if self.etag_unread:
            headers["If-None-Match"] = self.etag_unread
        r = self.client.get("/api/v1/messages/unread", headers=headers, name="/messages/unread")
        if r.status_code == 200:
            self.etag_unread = r.headers.get("ETag")

    @task(9)
    def open_or_poll_thread(self):
        if not self.threads:
            return
        bid = random.choice(self.threads)
        last = self.last_ids.get(bid)
        params = {"after_id": last} if last is not None else None
        r = self.client.get(
            f"/api/v1/bookings/{bid}/messages",
            headers=_auth_header(self.token),
            params=params,
            name="/bookings/[id]/messages",
        )
        if r.status_code != 200:
            return
        body = _safe_json(r)
        if body.get("last_id") is not None:
            self.last_ids[bid] = int(body["last_id"])
        if body.get("items"):
            self.client.put(
                f"/api/v1/bookings/{bid}/messages/read",
                headers=_auth_header(self.token),
                name="/bookings/[id]/messages/read",
            )
        if random.random() < SEND_RATIO:
            # Closed bookings answer 403; that is expected traffic, not a failure
            with self.client.post(
                f"/api/v1/bookings/{bid}/messages",
                headers=_auth_header(self.token),
                json={"content": "load test ping"},
                name="/bookings/[id]/messages [send]",
                catch_response=True,
            ) as resp:
                if resp.status_code in (201, 403):
                    resp.success()


# --- Optional event hooks -----------------------------------------------------

@events.test_start.add_listener
def on_test_start(environment, **kwargs):
    logging.getLogger("locust").info("Starting chat load test with %d tokens", len(CHAT_TOKENS))


@events.test_stop.add_listener
def on_test_stop(environment, **kwargs):
    logging.getLogger("locust").info("Test finished")
