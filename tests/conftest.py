"""
Pytest configuration and fixtures.
"""

import os
import socket
import stat
import sys
from pathlib import Path

import pytest

from buckle.config import LaunchConfig
from buckle.core.state import StateStore

# A tiny stand-in for the Buckle server. Behaviour is picked with FAKE_SERVER_MODE:
#   healthy    serve 200 on /api/health
#   unhealthy  serve 503 on every request
#   silent     never listen
#   exit       exit immediately with code 3
FAKE_SERVER_SOURCE = '''
import json
import os
import sys
import time
from http.server import BaseHTTPRequestHandler, HTTPServer

mode = os.environ.get("FAKE_SERVER_MODE", "healthy")
env_out = os.environ.get("FAKE_SERVER_ENV_OUT")
if env_out:
    with open(env_out, "w") as f:
        json.dump({"PORT": os.environ.get("PORT"), "CONFIG_PATH": os.environ.get("CONFIG_PATH")}, f)

if mode == "exit":
    sys.exit(3)
if mode == "silent":
    while True:
        time.sleep(1)


class Handler(BaseHTTPRequestHandler):
    def do_GET(self):
        ok = mode == "healthy" and self.path == "/api/health"
        self.send_response(200 if ok else 503)
        self.end_headers()
        self.wfile.write(b"ok" if ok else b"starting")

    def log_message(self, *args):
        pass


HTTPServer(("127.0.0.1", int(os.environ["PORT"])), Handler).serve_forever()
'''


@pytest.fixture(autouse=True)
def clean_env(monkeypatch, tmp_path):
    """Isolate tests from the developer's BUCKLE_* variables and .env file."""
    for key in list(os.environ):
        if key.startswith("BUCKLE_") or key.startswith("FAKE_SERVER_"):
            monkeypatch.delenv(key, raising=False)
    monkeypatch.chdir(tmp_path)


@pytest.fixture
def state_dir(tmp_path) -> Path:
    return tmp_path / ".buckle"


@pytest.fixture
def store(state_dir) -> StateStore:
    return StateStore(state_dir)


@pytest.fixture
def free_port() -> int:
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as s:
        s.bind(("127.0.0.1", 0))
        return s.getsockname()[1]


@pytest.fixture
def fake_server(tmp_path) -> Path:
    """An executable that runs the fake server with the current interpreter."""
    script = tmp_path / "fake_server.py"
    script.write_text(FAKE_SERVER_SOURCE)

    binary = tmp_path / "buckle-server"
    binary.write_text(f'#!/bin/sh\nexec "{sys.executable}" "{script}" "$@"\n')
    binary.chmod(binary.stat().st_mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)
    return binary


@pytest.fixture
def launch_config(fake_server, free_port, tmp_path) -> LaunchConfig:
    return LaunchConfig(
        binary_path=fake_server,
        config_path=tmp_path / "buckle.yml",
        port=free_port,
        host="127.0.0.1",
    )
