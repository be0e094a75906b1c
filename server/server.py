import socket
import sys
import threading

import numpy as np

from common.config import (
    BUFFER_SIZE,
    DIVISION_BY_ZERO,
    HOST,
    INVALID_OPERATION,
    POLL_INTERVAL,
)
from common.log import fmt_addr, log
from common.syslog import LOG_ERROR, LOG_INFO, LOG_WARN
from common.wire import (
    InvalidRequest,
    Operation,
    ProtocolError,
    decode_requests,
    encode_results,
)


def evaluate(request) -> str:
    """Result string for one batch element. Python ints do not overflow."""
    if isinstance(request, InvalidRequest):
        return INVALID_OPERATION

    a, b = request.arg1, request.arg2
    op = request.operation

    if op is Operation.ADD:
        return str(a + b)
    if op is Operation.SUB:
        return str(a - b)
    if op is Operation.MUL:
        return str(a * b)
    if op is Operation.DIV:
        if b == 0:
            return DIVISION_BY_ZERO
        # shortest round-trip digits, positional, no trailing ".0"
        return np.format_float_positional(a / b, trim="-")
    return INVALID_OPERATION


def evaluate_batch(batch):
    return [evaluate(item) for item in batch]


class Server:
    def __init__(self, port, host=HOST):
        self.sock = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
        try:
            self.sock.bind((host, port))
        except OSError:
            self.sock.close()
            raise
        self.address = self.sock.getsockname()
        self.node_id = fmt_addr(self.address)

        self._stop = threading.Event()
        self.batches_served = 0

        print(f"[{self.node_id}] Server started on port {self.address[1]}")
        LOG_INFO("SERVER_START", node_id=self.node_id, role="server", addr=self.address)

    def handle_datagram(self, data: bytes, addr):
        """Evaluate one submitted batch and reply to its sender. Returns the results, or None."""
        try:
            batch = decode_requests(data)
        except ProtocolError as e:
            log("server", self.node_id, "BAD_BATCH", level="WARN", addr=addr, error=e)
            LOG_WARN("BAD_BATCH", node_id=self.node_id, role="server", addr=addr, error=e)
            return None

        log("server", self.node_id, "BATCH_RECV", addr=addr, size=len(batch))
        results = evaluate_batch(batch)

        for item, result in zip(batch, results):
            if isinstance(item, InvalidRequest):
                log("server", self.node_id, "INVALID_REQUEST", level="WARN", addr=addr, reason=item.reason)
            print(f"[{self.node_id}] {item} = {result}")
        print()

        self.sock.sendto(encode_results(results), addr)
        self.batches_served += 1
        return results

    def serve_forever(self):
        self.sock.settimeout(POLL_INTERVAL)

        while not self._stop.is_set():
            try:
                data, addr = self.sock.recvfrom(BUFFER_SIZE)
            except (socket.timeout, TimeoutError):
                continue
            except ConnectionResetError:
                continue
            except OSError as e:
                if not self._stop.is_set():
                    log("server", self.node_id, "SOCKET_ERROR", level="ERROR", error=e)
                    LOG_ERROR("SOCKET_ERROR", node_id=self.node_id, role="server", error=e)
                break

            try:
                self.handle_datagram(data, addr)
            except OSError as e:
                # reply could not be sent; the sender times out on its own
                log("server", self.node_id, "REPLY_FAILED", level="ERROR", addr=addr, error=e)

        log("server", self.node_id, "SERVER_STOP", batches_served=self.batches_served)

    def stop(self):
        self._stop.set()

    def close(self):
        self.stop()
        self.sock.close()


def main(argv=None):
    args = sys.argv[1:] if argv is None else argv
    if len(args) != 1:
        print("Usage: python -m server.server <PORT>")
        return 1

    try:
        server = Server(int(args[0]))
    except (OSError, ValueError) as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1

    try:
        server.serve_forever()
    except KeyboardInterrupt:
        pass
    finally:
        server.close()
    return 0


if __name__ == "__main__":
    sys.exit(main())
