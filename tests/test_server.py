import json
import socket
import subprocess
import sys
import time
from pathlib import Path

import pytest

from common.wire import InvalidRequest, Request
from server.server import evaluate, evaluate_batch

BUFFER_SIZE = 65507
SERVER_PORT = 5301
SERVER_ADDR = ("127.0.0.1", SERVER_PORT)


def udp_request(sock, addr, payload, timeout=1.0):
    sock.settimeout(timeout)
    if not isinstance(payload, bytes):
        payload = json.dumps(payload).encode()
    sock.sendto(payload, addr)
    try:
        data, raddr = sock.recvfrom(BUFFER_SIZE)
        return json.loads(data.decode()), raddr
    except (socket.timeout, TimeoutError, ConnectionResetError):
        return None, None


def start_server(project_root: Path, port: int):
    cmd = [sys.executable, "-u", "-m", "server.server", str(port)]
    return subprocess.Popen(
        cmd,
        cwd=str(project_root),
        stdout=subprocess.DEVNULL,
        stderr=subprocess.DEVNULL,
        text=True
    )


def stop_server(proc: subprocess.Popen):
    if proc.poll() is not None:
        return
    proc.terminate()
    try:
        proc.wait(timeout=2.0)
    except subprocess.TimeoutExpired:
        proc.kill()


def wait_for_server_ready(timeout_s=6.0):
    sock = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
    try:
        deadline = time.time() + timeout_s
        while time.time() < deadline:
            reply, _ = udp_request(sock, SERVER_ADDR, [], timeout=0.3)
            if reply == []:
                return True
            time.sleep(0.1)
        return False
    finally:
        sock.close()


@pytest.fixture(scope="module")
def project_root():
    return Path(__file__).resolve().parents[1]


@pytest.fixture(scope="module")
def server(project_root):
    proc = start_server(project_root, SERVER_PORT)
    try:
        assert wait_for_server_ready(timeout_s=8.0), "Server did not become ready in time"
        yield proc
    finally:
        stop_server(proc)


# -------------------- evaluation --------------------

def test_integer_arithmetic_is_exact():
    big, small = 2 ** 31 - 1, -(2 ** 31)
    assert evaluate(Request("add", big, big)) == str(2 * big)
    assert evaluate(Request("sub", small, big)) == str(small - big)
    assert evaluate(Request("mul", small, small)) == str(2 ** 62)
    assert evaluate(Request("add", 2, 3)) == "5"


def test_division():
    assert evaluate(Request("div", 7, 2)) == "3.5"
    assert evaluate(Request("div", -1, 3)) == "-0.3333333333333333"
    assert evaluate(Request("div", 5, 0)) == "Division by zero"
    assert evaluate(Request("div", 0, 0)) == "Division by zero"


def test_division_formatting_is_positional():
    assert evaluate(Request("div", 4, 2)) == "2"
    assert evaluate(Request("div", -9, 1)) == "-9"
    assert evaluate(Request("div", 1, 2147483647)) == "0.0000000004656612875245797"
    assert evaluate(Request("div", -2147483648, 1)) == "-2147483648"


def test_invalid_request_fails_alone():
    batch = [Request("add", 1, 2), InvalidRequest({"operation": "pow"}, "unknown operation"), Request("sub", 1, 2)]
    assert evaluate_batch(batch) == ["3", "Invalid operation", "-1"]


# -------------------- over UDP --------------------

def test_add_and_division_by_zero(server):
    sock = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
    try:
        batch = [{"operation": "add", "arg1": 2, "arg2": 3}, {"operation": "div", "arg1": 5, "arg2": 0}]
        reply, raddr = udp_request(sock, SERVER_ADDR, batch)
        assert reply == ["5", "Division by zero"]
        assert raddr == SERVER_ADDR
    finally:
        sock.close()


def test_float_division(server):
    sock = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
    try:
        reply, _ = udp_request(sock, SERVER_ADDR, [{"operation": "div", "arg1": 7, "arg2": 2}])
        assert reply == ["3.5"]
    finally:
        sock.close()


def test_reply_is_positionally_aligned(server):
    sock = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
    try:
        batch = [{"operation": "sub", "arg1": i, "arg2": 1} for i in range(200)]
        reply, _ = udp_request(sock, SERVER_ADDR, batch)
        assert reply == [str(i - 1) for i in range(200)]
    finally:
        sock.close()


def test_unknown_operation_does_not_kill_server(server):
    sock = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
    try:
        batch = [{"operation": "mod", "arg1": 7, "arg2": 2}, {"operation": "mul", "arg1": 6, "arg2": 7}]
        reply, _ = udp_request(sock, SERVER_ADDR, batch)
        assert reply == ["Invalid operation", "42"]

        assert server.poll() is None
        reply, _ = udp_request(sock, SERVER_ADDR, [{"operation": "add", "arg1": 1, "arg2": 1}])
        assert reply == ["2"]
    finally:
        sock.close()


def test_garbage_datagram_gets_no_reply_and_loop_continues(server):
    sock = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
    try:
        reply, _ = udp_request(sock, SERVER_ADDR, b"token", timeout=0.5)
        assert reply is None

        reply, _ = udp_request(sock, SERVER_ADDR, [{"operation": "add", "arg1": 20, "arg2": 22}])
        assert reply == ["42"]
    finally:
        sock.close()


def test_deeply_nested_datagram_does_not_stop_server(server):
    sock = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
    try:
        reply, _ = udp_request(sock, SERVER_ADDR, b"[" * 50000, timeout=0.5)
        assert reply is None
        assert server.poll() is None

        reply, _ = udp_request(sock, SERVER_ADDR, [{"operation": "add", "arg1": 1, "arg2": 1}])
        assert reply == ["2"]
    finally:
        sock.close()


def test_bind_failure_exits_with_status_1(server, project_root):
    proc = subprocess.run(
        [sys.executable, "-m", "server.server", str(SERVER_PORT)],
        cwd=str(project_root),
        capture_output=True,
        text=True,
        timeout=10,
    )
    assert proc.returncode == 1
    assert "Error" in proc.stderr
