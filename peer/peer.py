import queue
import socket
import sys
import threading
import time

from common.config import (
    BUFFER_SIZE,
    CHECK,
    CHECK_TIMEOUT,
    EVENT_RATE,
    HOST,
    MAX_BATCH_SIZE,
    OK,
    POLL_INTERVAL,
    REPLY_TIMEOUT,
    TOKEN,
)
from common.log import fmt_addr, log
from common.syslog import LOG_ERROR, LOG_INFO, LOG_WARN
from common.wire import (
    ProtocolError,
    RingError,
    decode_results,
    encode_requests,
    parse_address,
    split_batches,
)
from peer.generator import RequestGenerator, check_event_rate


def resolve(addr):
    """'host:port' or (host, port) -> (ip, port), comparable with recvfrom() sources."""
    if isinstance(addr, str):
        addr = parse_address(addr)
    host, port = addr
    return socket.gethostbyname(host), int(port)


class Peer:
    def __init__(self, port, successor, server, host=HOST, event_rate=EVENT_RATE,
                 reply_timeout=REPLY_TIMEOUT, check_timeout=CHECK_TIMEOUT,
                 batch_size=MAX_BATCH_SIZE, seed=None):
        """
        event_rate=None runs the peer without a request generator; work can
        still be queued with submit().
        """
        self.successor = resolve(successor)
        self.server = resolve(server)
        self.event_rate = None if event_rate is None else check_event_rate(event_rate)
        self.reply_timeout = reply_timeout
        self.check_timeout = check_timeout
        self.batch_size = batch_size
        self.seed = seed

        self.sock = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
        try:
            self.sock.bind((host, port))
        except OSError:
            self.sock.close()
            raise
        # port 0 binds an ephemeral port
        self.address = self.sock.getsockname()
        self.node_id = fmt_addr(self.address)

        # generator -> listener; the only state the two threads share
        self.channel = queue.Queue()
        # drained but not yet answered by the server; listener thread only
        self._backlog = []

        self._stop = threading.Event()
        self._probe_ack = threading.Event()
        # datagrams received by check() before the listener started
        self._deferred = []
        self._generator = None
        self._listener = None

        self.tokens_received = 0
        self.tokens_forwarded = 0
        self.batches_sent = 0
        self.requests_answered = 0

        log("peer", self.node_id, "PEER_START", successor=self.successor, server=self.server)

    @property
    def listening(self) -> bool:
        return self._listener is not None and self._listener.is_alive()

    def submit(self, request):
        self.channel.put(request)

    def pending(self) -> int:
        return len(self._backlog) + self.channel.qsize()

    # ------------------------------------------------------------------
    # ring actions
    # ------------------------------------------------------------------
    def send_token(self):
        self.sock.sendto(TOKEN, self.successor)
        self.tokens_forwarded += 1
        log("peer", self.node_id, "TOKEN_SENT", to=self.successor)

    def start(self):
        """Originate the ring's token, then listen."""
        if self.listening:
            raise RuntimeError("peer is already listening")
        LOG_INFO("TOKEN_ORIGINATED", node_id=self.node_id, role="peer", addr=self.successor)
        self.send_token()
        self.listen()

    def listen(self):
        if self.listening:
            raise RuntimeError("peer is already listening")
        if self._stop.is_set():
            raise RuntimeError("peer has been stopped")

        # a generator outlives a listener that died on a socket error
        if self.event_rate is not None and not (self._generator and self._generator.is_alive()):
            self._generator = RequestGenerator(
                self.node_id, self.channel, self._stop, event_rate=self.event_rate, seed=self.seed
            )
            self._generator.start()

        self._listener = threading.Thread(
            target=self._listen_loop, name=f"listener-{self.node_id}", daemon=True
        )
        self._listener.start()

    def wait(self, timeout=None) -> bool:
        """Block until stop() is called (or timeout); True once stopped."""
        return self._stop.wait(timeout)

    def stop(self):
        if self._stop.is_set():
            return
        self._stop.set()
        for t in (self._generator, self._listener):
            if t is not None and t is not threading.current_thread():
                t.join(timeout=max(1.0, 2 * POLL_INTERVAL))
        self.sock.close()
        log("peer", self.node_id, "PEER_STOP", pending=self.pending(),
            tokens_received=self.tokens_received)

    def check(self) -> bool:
        """Ask the successor whether it is alive; False when no ok comes back within check_timeout or the socket fails."""
        try:
            if self.listening:
                # the listener owns the socket; it flags the ack for us
                self._probe_ack.clear()
                self.sock.sendto(CHECK, self.successor)
                alive = self._probe_ack.wait(self.check_timeout)
            else:
                self.sock.sendto(CHECK, self.successor)
                alive = self._await_check_reply()
        except OSError as e:
            # socket.timeout and ConnectionResetError included
            log("peer", self.node_id, "CHECK_FAILED", level="WARN", to=self.successor, error=e)
            alive = False

        log("peer", self.node_id, "CHECK_RESULT", level="OK" if alive else "WARN",
            to=self.successor, alive=alive)
        if not alive:
            LOG_WARN("PEER_DEAD", node_id=self.node_id, role="peer", addr=self.successor)
        return alive

    def _await_check_reply(self) -> bool:
        """
        Wait up to check_timeout for the successor's answer. Checks from
        others are answered; any other datagram (a token arriving before
        listen) is kept for the listener.
        """
        deadline = time.monotonic() + self.check_timeout
        try:
            while True:
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    return False

                self.sock.settimeout(remaining)
                data, addr = self.sock.recvfrom(BUFFER_SIZE)

                if addr == self.successor and data == OK:
                    return True
                if data == CHECK:
                    self.sock.sendto(OK, addr)
                else:
                    self._deferred.append((data, addr))
        except (socket.timeout, TimeoutError):
            return False
        finally:
            self.sock.settimeout(None)

    # ------------------------------------------------------------------
    # listener
    # ------------------------------------------------------------------
    def _listen_loop(self):
        log("peer", self.node_id, "LISTENING")
        self.sock.settimeout(POLL_INTERVAL)

        while self._deferred and not self._stop.is_set():
            data, addr = self._deferred.pop(0)
            try:
                self.handle_datagram(data, addr)
            except Exception as e:
                log("peer", self.node_id, "HANDLER_ERROR", level="ERROR", addr=addr, error=repr(e))

        while not self._stop.is_set():
            try:
                data, addr = self.sock.recvfrom(BUFFER_SIZE)
            except (socket.timeout, TimeoutError):
                continue
            except ConnectionResetError:
                continue
            except OSError as e:
                if not self._stop.is_set():
                    log("peer", self.node_id, "LISTENER_SOCKET_ERROR", level="ERROR", error=e)
                    LOG_ERROR("LISTENER_SOCKET_ERROR", node_id=self.node_id, role="peer", error=e)
                break

            try:
                self.handle_datagram(data, addr)
            except Exception as e:
                log("peer", self.node_id, "HANDLER_ERROR", level="ERROR", addr=addr, error=repr(e))
                LOG_ERROR("HANDLER_ERROR", node_id=self.node_id, role="peer", addr=addr, error=repr(e))

        log("peer", self.node_id, "LISTENER_STOP")

    def handle_datagram(self, data: bytes, addr):
        if data == TOKEN:
            return self.handle_token()

        if data == CHECK:
            self.sock.sendto(OK, addr)
            log("peer", self.node_id, "CHECK_ANSWERED", to=addr)
        elif data == OK:
            self._probe_ack.set()
        else:
            log("peer", self.node_id, "PROTOCOL_VIOLATION", level="WARN", addr=addr, size=len(data))
            LOG_WARN("PROTOCOL_VIOLATION", node_id=self.node_id, role="peer", addr=addr, size=len(data))
        return None

    def handle_token(self):
        """
        Submit everything queued so far, then pass the token on.

        Returns the (request, result) pairs answered during this hold. The
        token is forwarded even if the server exchange failed; unanswered
        requests stay in the backlog for the next hold.
        """
        self.tokens_received += 1
        log("peer", self.node_id, "TOKEN_RECV", pending=self.pending())
        try:
            return self._submit_backlog()
        finally:
            self.send_token()

    def _drain(self):
        while True:
            try:
                self._backlog.append(self.channel.get_nowait())
            except queue.Empty:
                return

    def _submit_backlog(self):
        self._drain()
        if not self._backlog:
            return []

        print(f"[{self.node_id}] Sending {len(self._backlog)} requests to server")
        answered = []
        for chunk in list(split_batches(self._backlog, self.batch_size)):
            results = self._exchange(chunk)
            if results is None:
                LOG_WARN("BATCH_DEFERRED", node_id=self.node_id, role="peer",
                         addr=self.server, deferred=len(self._backlog))
                break

            del self._backlog[:len(chunk)]
            for request, result in zip(chunk, results):
                print(f"[{self.node_id}] {request} = {result}")
            answered.extend(zip(chunk, results))

        print()
        return answered

    def _exchange(self, chunk):
        try:
            self.sock.sendto(encode_requests(chunk), self.server)
        except OSError as e:
            log("peer", self.node_id, "BATCH_SEND_FAILED", level="ERROR", to=self.server, error=e)
            return None

        data = self._await_reply()
        if data is None:
            return None

        try:
            results = decode_results(data)
        except ProtocolError as e:
            log("peer", self.node_id, "BAD_REPLY", level="WARN", addr=self.server, error=e)
            return None

        if len(results) != len(chunk):
            log("peer", self.node_id, "BAD_REPLY", level="WARN", addr=self.server,
                expected=len(chunk), got=len(results))
            return None

        self.batches_sent += 1
        self.requests_answered += len(results)
        log("peer", self.node_id, "BATCH_ANSWERED", size=len(results))
        return results

    def _await_reply(self):
        """
        Wait up to reply_timeout for a datagram from the server. Probes keep
        being served meanwhile; anything else is dropped.
        """
        deadline = time.monotonic() + self.reply_timeout
        try:
            while not self._stop.is_set():
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    log("peer", self.node_id, "SERVER_TIMEOUT", level="WARN", addr=self.server,
                        timeout=self.reply_timeout)
                    return None

                self.sock.settimeout(min(remaining, POLL_INTERVAL))
                try:
                    data, addr = self.sock.recvfrom(BUFFER_SIZE)
                except (socket.timeout, TimeoutError, ConnectionResetError):
                    continue
                except OSError as e:
                    log("peer", self.node_id, "SERVER_RECV_FAILED", level="ERROR", error=e)
                    return None

                if addr == self.server:
                    return data
                if data == CHECK:
                    self.sock.sendto(OK, addr)
                elif data == OK:
                    self._probe_ack.set()
                elif data == TOKEN:
                    # a second token in the ring; never forward it
                    log("peer", self.node_id, "DUPLICATE_TOKEN", level="WARN", addr=addr)
                    LOG_WARN("DUPLICATE_TOKEN", node_id=self.node_id, role="peer", addr=addr)
                else:
                    log("peer", self.node_id, "UNEXPECTED_DATAGRAM", level="WARN", addr=addr)
            return None
        finally:
            if not self._stop.is_set():
                self.sock.settimeout(POLL_INTERVAL)


def run_shell(peer, read=input):
    while True:
        try:
            command = read("> ").strip()
        except EOFError:
            command = "exit"

        if command in ("listen", "start"):
            if peer.listening:
                print("Already listening")
                continue
            try:
                if command == "start":
                    peer.start()
                else:
                    peer.listen()
            except OSError as e:
                print(f"Error: {e}")

        elif command == "check":
            print("Peer is alive" if peer.check() else "Peer is dead")

        elif command == "status":
            print(
                f"pending={peer.pending()} tokens_received={peer.tokens_received} "
                f"batches_sent={peer.batches_sent} listening={peer.listening}"
            )

        elif command == "exit":
            peer.stop()
            return 0

        elif command:
            print("Invalid command")


def main(argv=None):
    args = sys.argv[1:] if argv is None else argv
    if len(args) != 3:
        print("Usage: python -m peer.peer <PORT> <SUCCESSOR_HOST:PORT> <SERVER_HOST:PORT>")
        return 1

    try:
        peer = Peer(int(args[0]), args[1], args[2])
    except (OSError, RingError, ValueError) as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1

    try:
        return run_shell(peer)
    except KeyboardInterrupt:
        peer.stop()
        return 0


if __name__ == "__main__":
    sys.exit(main())
