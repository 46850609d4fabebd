"""Identifier utilities."""

from __future__ import annotations

import os
import socket
import uuid


def generate_lease_owner() -> str:
  """Return an owner token for a per-job tick lease.

  The hostname and pid make lease holders readable in the jobs table; the
  random suffix keeps concurrent ticks in one process distinct.
  """
  return f"{socket.gethostname()}:{os.getpid()}:{uuid.uuid4().hex[:12]}"


def generate_request_id() -> str:
  """Return a new request identifier for log correlation."""
  return str(uuid.uuid4())
