VERSION = "0.4"
VERSION_NOTE = "Banner sniffing accumulates short reads; forwarder pre-loads the banner; config file with --create-config."

DEBUG_MODE = False

import os
import socket
import stat
import sys
import time
import errno
import select
import signal
from enum import Enum
from typing import Optional, List, Tuple, Dict, NamedTuple, Callable
from termcolor import colored

SSH_BANNER_PREFIX   = b"SSH"
DEFAULT_SSH_PORT    = 22
STAGGER_DELAY       = 1000        # milliseconds
FALLBACK_DELAY      = 3000        # milliseconds after the last launch
FORWARD_BUFFER_SIZE = 8192        # bytes per direction
WRITE_CHUNK         = 4096        # bytes, never more than an atomic pipe write
MIN_WAIT            = 1           # microseconds

CONFIG_PATH = "~/.ssh-multipath-proxy/config"

DEFAULT_CONFIG = {
    "stagger_delay": str(STAGGER_DELAY),
    "fallback_delay": str(FALLBACK_DELAY),
    "default_port": str(DEFAULT_SSH_PORT),
    "buffer_size": str(FORWARD_BUFFER_SIZE),
    "address_family": "any",
    "setsid": "yes",
    "tcp_keepalive": "no",
    "verbose": "no",
}
CONFIG_KEYS = list(DEFAULT_CONFIG.keys())

ADDRESS_FAMILIES = {
    "any": socket.AF_UNSPEC,
    "ipv4": socket.AF_INET,
    "ipv6": socket.AF_INET6,
}

# options taking a value, mapped to their config key
OPTION_MAP = {
    "--stagger-delay": "stagger_delay",
    "--fallback-delay": "fallback_delay",
    "--default-port": "default_port",
    "--buffer-size": "buffer_size",
    "--address-family": "address_family",
    "--config": "config",
}
# flags, mapped to the config key and the value they set
FLAG_MAP = {
    "--no-setsid": ("setsid", "no"),
    "--keepalive": ("tcp_keepalive", "yes"),
    "--verbose": ("verbose", "yes"),
    "--create-config": ("create_config", True),
}

USAGE = "Usage: {prog} [options] <host1>[:port] [<host2>[:port] ...] [-- command [args ...]]"


class PollError(Exception):
    """The readiness poll itself failed; nothing can make progress after this."""


class HostSpec(NamedTuple):
    """A host as given on the command line, not yet resolved."""
    name: str
    host: str
    port: int


class Candidate(NamedTuple):
    name: str
    address: str
    port: int
    family: int

    def sockaddr(self):
        return (self.address, self.port)

    def describe(self) -> str:
        if ':' in self.address:
            return f"{self.name} ([{self.address}]:{self.port})"
        return f"{self.name} ({self.address}:{self.port})"


class PendingAttempt:
    """One in-flight connection attempt, owned by the race until it is
    discarded or promoted to winner.

    `received` collects the banner bytes read so far; `fd` is captured at
    creation so the attempt keeps its identity after the socket is closed.
    """

    def __init__(self, candidate: Candidate, sock, launched_at: float):
        self.candidate   = candidate
        self.sock        = sock
        self.fd          = sock.fileno()
        self.launched_at = launched_at
        self.received    = b""
        self.reason      = None

    def fileno(self):
        return self.fd

    def close(self):
        self.sock.close()


def _parse_port(port_str: str, text: str) -> int:
    try:
        port = int(port_str)
    except ValueError:
        raise ValueError(f"{text}: invalid port '{port_str}'") from None
    if not 0 < port < 65536:
        raise ValueError(f"{text}: port {port} out of range")
    return port


def parse_host_spec(text: str, default_port: int = DEFAULT_SSH_PORT) -> HostSpec:
    """Parse `host`, `host:port`, `[v6addr]` or `[v6addr]:port`.

    A bare IPv6 address (more than one colon, no brackets) is taken as a
    host without a port.

    Raises:
        ValueError: on an empty host or a malformed port
    """
    host, port = text, default_port
    if text.startswith('['):
        end = text.find(']')
        if end == -1:
            raise ValueError(f"{text}: missing ']'")
        host = text[1:end]
        rest = text[end + 1:]
        if rest:
            if not rest.startswith(':'):
                raise ValueError(f"{text}: unexpected '{rest}' after address")
            port = _parse_port(rest[1:], text)
    elif text.count(':') == 1:
        host, port_str = text.rsplit(':', 1)
        port = _parse_port(port_str, text)
    if not host:
        raise ValueError(f"{text}: empty host name")
    return HostSpec(text, host, port)


def resolve_host(host: str, family=socket.AF_UNSPEC) -> List[Tuple[int, str]]:
    """Synchronously resolve `host` to a list of (family, address) pairs.

    Returns an empty list when the name does not resolve.
    """
    try:
        infos = socket.getaddrinfo(host, None, family, socket.SOCK_STREAM)
    except (socket.gaierror, UnicodeError):
        return []
    return [(fam, addr[0]) for fam, _, _, _, addr in infos]


class Connector:
    """Start one non-blocking TCP connect per host.

    Only the first resolved address of a name is tried. Every failure
    here is local to the host: it is reported on stderr and `launch()`
    returns None.
    """

    def __init__(self, resolver: Optional[Callable[[str], List[Tuple[int, str]]]] = None,
                 family=socket.AF_UNSPEC, keepalive: bool = False, clock=time.monotonic):
        self.family    = family
        self.resolver  = resolver or (lambda host: resolve_host(host, self.family))
        self.keepalive = keepalive
        self.clock     = clock

    def launch(self, spec: HostSpec) -> Optional[PendingAttempt]:
        addresses = self.resolver(spec.host)
        if not addresses:
            print(f"{spec.host}: no such host", file=sys.stderr)
            return None

        family, address = addresses[0]
        candidate = Candidate(spec.name, address, spec.port, family)

        try:
            sock = socket.socket(family, socket.SOCK_STREAM)
        except OSError as e:
            print(f"socket: {e.strerror}", file=sys.stderr)
            return None

        # Python sockets are created non-inheritable, i.e. close-on-exec
        sock.set_inheritable(False)
        sock.setblocking(False)
        if self.keepalive:
            sock.setsockopt(socket.SOL_SOCKET, socket.SO_KEEPALIVE, 1)

        try:
            err = sock.connect_ex(candidate.sockaddr())
        except OSError as e:
            err = e.errno
        if err not in (0, errno.EINPROGRESS, errno.EWOULDBLOCK, errno.EAGAIN):
            print(f"Discarding: {candidate.describe()} ({os.strerror(err)})", file=sys.stderr)
            sock.close()
            return None

        if DEBUG_MODE:
            print(f"Trying: {candidate.describe()}", file=sys.stderr)
        return PendingAttempt(candidate, sock, self.clock())


class WaitMode(Enum):
    """What a poll is waiting for; both share the same poller."""
    RACE    = "race"
    FORWARD = "forward"


class ReadinessPoller:
    """The single blocking point of the proxy.

    Deadlines are absolute values of `clock`. They are turned into a
    relative timeout on every call, so time already spent is accounted
    for, and clamped to MIN_WAIT so an expired deadline still polls once.
    """

    def __init__(self, clock=time.monotonic):
        self.clock = clock

    def timeout_for(self, deadline: Optional[float]) -> Optional[float]:
        if deadline is None:
            return None
        return max(deadline - self.clock(), MIN_WAIT / 1_000_000.0)

    def wait(self, mode: WaitMode, readers, writers=(), deadline: Optional[float] = None):
        """Block until a handle is ready or `deadline` passes.

        Args:
            mode: WaitMode tag, used in error messages
            readers: objects with fileno() to watch for readability
            writers: objects with fileno() to watch for writability
            deadline: absolute clock value, or None to wait forever

        Returns:
            (ready_readers, ready_writers); both empty on timeout

        Raises:
            PollError: if the underlying select() fails
        """
        readers = list(readers)
        writers = list(writers)
        if not readers and not writers and deadline is None:
            raise PollError(f"{mode.value} poll with nothing to wait for")
        timeout = self.timeout_for(deadline)
        try:
            ready_r, ready_w, _ = select.select(readers, writers, [], timeout)
        except (OSError, ValueError) as e:
            raise PollError(f"{mode.value} poll failed: {e}") from e
        return ready_r, ready_w


class Verdict(Enum):
    ACCEPT  = "accept"
    REJECT  = "reject"
    PENDING = "pending"


class ProtocolSniffer:
    """Validate a candidate by the first bytes its peer sends.

    Each `feed()` does exactly one read of the bytes still missing from
    the signature. Bytes are kept on the attempt so a short read such as
    `SS` stays pending until more data, EOF or an error arrives.
    """

    def __init__(self, signature: bytes = SSH_BANNER_PREFIX):
        self.signature = signature

    def feed(self, attempt: PendingAttempt) -> Verdict:
        missing = len(self.signature) - len(attempt.received)
        try:
            data = attempt.sock.recv(missing)
        except (BlockingIOError, InterruptedError):
            return Verdict.PENDING
        except OSError as e:
            attempt.reason = e.strerror or str(e)
            return Verdict.REJECT

        if not data:
            attempt.reason = "connection closed"
            return Verdict.REJECT

        attempt.received += data
        if attempt.received == self.signature:
            return Verdict.ACCEPT
        if not self.signature.startswith(attempt.received):
            attempt.reason = f"unexpected banner {attempt.received!r}"
            return Verdict.REJECT
        return Verdict.PENDING


class RaceState(Enum):
    STAGGERING = "staggering"
    WAITING    = "waiting"
    WON        = "won"
    EXHAUSTED  = "exhausted"


class RaceCoordinator:
    """Race connection attempts to a list of hosts, keeping the first one
    that answers with the expected banner.

    Hosts are launched one at a time. Before each launch the coordinator
    polls the pending attempts until `stagger_delay` after the previous
    launch, or only momentarily if that attempt is already gone. Once all
    hosts are launched it keeps waiting (WAITING) until a winner appears,
    the pending set runs empty (EXHAUSTED), or the caller's deadline passes.

    WON and EXHAUSTED are terminal. On WON every other attempt has been
    closed and `winner` holds the only open socket.
    """

    def __init__(self, specs: List[HostSpec], connector: Connector,
                 poller: Optional[ReadinessPoller] = None,
                 sniffer: Optional[ProtocolSniffer] = None,
                 clock=time.monotonic, stagger_delay: float = STAGGER_DELAY / 1000.0):
        self.specs         = list(specs)
        self.connector     = connector
        self.clock         = clock
        self.poller        = poller or ReadinessPoller(clock)
        self.sniffer       = sniffer or ProtocolSniffer()
        self.stagger_delay = stagger_delay

        self.state: RaceState                       = RaceState.STAGGERING
        self.pending: Dict[int, PendingAttempt]     = {}
        self.winner: Optional[PendingAttempt]       = None
        self.last_attempt: Optional[PendingAttempt] = None
        self.launched                               = 0

    def stagger_deadline(self) -> float:
        """Deadline for the wait before the next launch.

        One stagger delay after the most recent launch while that attempt
        is still pending, otherwise now (the poller makes that a minimal
        wait). Other young attempts are deliberately not considered.
        """
        last = self.last_attempt
        if last is not None and self.pending.get(last.fd) is last:
            return last.launched_at + self.stagger_delay
        return self.clock()

    def run(self, final_delay: Optional[float] = None) -> RaceState:
        """Launch every host and wait for a winner.

        Args:
            final_delay: seconds to keep waiting after the last launch, or
                None to wait until a winner appears or every attempt failed

        Returns:
            WON, EXHAUSTED, or WAITING when `final_delay` ran out with
            attempts still pending (call `wait()` to keep going)
        """
        if self.state is not RaceState.STAGGERING:
            raise RuntimeError(f"race already {self.state.value}")

        while self.launched < len(self.specs):
            while self.pending:
                if not self._poll(self.stagger_deadline()):
                    break
                if self.state is RaceState.WON:
                    return self.state
            self._launch(self.specs[self.launched])

        self.state = RaceState.WAITING
        deadline = None
        if final_delay is not None and self.last_attempt is not None:
            deadline = self.last_attempt.launched_at + final_delay
        return self.wait(deadline)

    def wait(self, deadline: Optional[float] = None) -> RaceState:
        """Keep polling the launched attempts until `deadline`."""
        if self.state is not RaceState.WAITING:
            raise RuntimeError(f"cannot wait while race is {self.state.value}")

        while self.pending:
            if not self._poll(deadline):
                return self.state
            if self.state is RaceState.WON:
                return self.state

        self.state = RaceState.EXHAUSTED
        return self.state

    def close_all(self):
        """Close every pending attempt. The winner, if any, is left open."""
        for attempt in self.pending.values():
            attempt.close()
        self.pending.clear()

    def _launch(self, spec: HostSpec):
        self.launched += 1
        attempt = self.connector.launch(spec)
        if attempt is None:
            return
        self.pending[attempt.fd] = attempt
        self.last_attempt = attempt

    def _poll(self, deadline: Optional[float]) -> bool:
        """Poll once; False on timeout, True if any attempt was handled."""
        ready, _ = self.poller.wait(WaitMode.RACE, list(self.pending.values()), deadline=deadline)
        if not ready:
            return False
        for attempt in ready:
            verdict = self.sniffer.feed(attempt)
            if verdict is Verdict.REJECT:
                self._discard(attempt)
            elif verdict is Verdict.ACCEPT:
                self._promote(attempt)
                break
        return True

    def _discard(self, attempt: PendingAttempt):
        del self.pending[attempt.fd]
        attempt.close()
        print(f"Discarding: {attempt.candidate.describe()} ({attempt.reason})", file=sys.stderr)

    def _promote(self, attempt: PendingAttempt):
        # point of no return
        del self.pending[attempt.fd]
        self.close_all()
        self.winner = attempt
        self.state = RaceState.WON
        print(f"Using: {attempt.candidate.describe()}", file=sys.stderr)


class SocketEnd:
    """Stream end backed by a socket object."""

    def __init__(self, sock):
        self.sock = sock

    def fileno(self):
        return self.sock.fileno()

    def read(self, size: int) -> bytes:
        return self.sock.recv(size)

    def write(self, data) -> int:
        return self.sock.send(data)

    def shutdown_write(self):
        try:
            self.sock.shutdown(socket.SHUT_WR)
        except OSError:
            # peer already gone
            pass

    def close(self):
        self.sock.close()


class FdEnd:
    """Stream end backed by a raw file descriptor (stdin/stdout).

    With `nonblocking` the descriptor is switched to non-blocking mode, so a
    write to a socketpair with less free space than the chunk returns short
    or raises BlockingIOError instead of stalling the relay.
    """

    def __init__(self, fd: int, name: str, nonblocking: bool = False):
        self.fd   = fd
        self.name = name
        if nonblocking:
            os.set_blocking(fd, False)

    def fileno(self):
        return self.fd

    def read(self, size: int) -> bytes:
        return os.read(self.fd, size)

    def write(self, data) -> int:
        return os.write(self.fd, data)

    def shutdown_write(self):
        """Signal end of stream and close the descriptor.

        When the descriptor is a socket (ssh hands ProxyCommand a socketpair)
        it is shut down first, so the peer sees EOF even while other copies
        of the descriptor exist.
        """
        if self.fd < 0:
            return
        if stat.S_ISSOCK(os.fstat(self.fd).st_mode):
            sock = socket.socket(fileno=os.dup(self.fd))
            try:
                sock.shutdown(socket.SHUT_WR)
            except OSError:
                pass
            finally:
                sock.close()
        self.close()

    def close(self):
        if self.fd >= 0:
            os.close(self.fd)
            self.fd = -1


class ForwardingChannel:
    """One direction of the relay with a bounded FIFO buffer.

    The source is read only while the buffer has spare room, and never for
    more than that room, so the buffer never grows past `capacity`.
    """

    def __init__(self, name: str, source, destination,
                 capacity: int = FORWARD_BUFFER_SIZE, initial: bytes = b""):
        if len(initial) > capacity:
            raise ValueError(f"{name}: {len(initial)} initial bytes exceed capacity {capacity}")
        self.name             = name
        self.source           = source
        self.destination      = destination
        self.capacity         = capacity
        self.buffer           = bytearray(initial)
        self.source_active    = True
        self.destination_open = True

    def wants_read(self) -> bool:
        return self.source_active and len(self.buffer) < self.capacity

    def wants_write(self) -> bool:
        return self.destination_open and len(self.buffer) > 0

    def finished(self) -> bool:
        return not self.source_active and not self.buffer

    def pump_in(self):
        try:
            data = self.source.read(self.capacity - len(self.buffer))
        except (BlockingIOError, InterruptedError):
            return
        except OSError:
            data = b""
        if not data:
            # keep whatever is buffered for draining
            self.source_active = False
            return
        self.buffer += data

    def pump_out(self):
        try:
            written = self.destination.write(bytes(self.buffer[:WRITE_CHUNK]))
        except (BlockingIOError, InterruptedError):
            return
        except OSError:
            written = 0
        if written < 1:
            if DEBUG_MODE:
                print(f"{self.name}: write failed, dropping {len(self.buffer)} bytes", file=sys.stderr)
            self.source_active = False
            self.buffer.clear()
            self.close_destination()
            return
        del self.buffer[:written]

    def close_destination(self):
        if self.destination_open:
            self.destination.shutdown_write()
            self.destination_open = False


class DuplexForwarder:
    """Relay bytes between the winning socket and the local streams.

    `initial` is written to local output ahead of anything read from the
    remote; it carries the banner bytes consumed while sniffing. Each
    direction is half-closed on its own once its source is exhausted and
    its buffer drained. `run()` returns 0 when both directions are closed.
    """

    def __init__(self, remote, local_in, local_out, capacity: int = FORWARD_BUFFER_SIZE,
                 initial: bytes = b"", poller: Optional[ReadinessPoller] = None):
        self.remote   = remote
        self.poller   = poller or ReadinessPoller()
        self.channels = [
            ForwardingChannel("local->remote", local_in, remote, capacity),
            ForwardingChannel("remote->local", remote, local_out, capacity, initial),
        ]

    def run(self) -> int:
        try:
            while True:
                readers = [c.source for c in self.channels if c.wants_read()]
                writers = [c.destination for c in self.channels if c.wants_write()]
                if not readers and not writers:
                    return 0

                ready_r, ready_w = self.poller.wait(WaitMode.FORWARD, readers, writers)

                for channel in self.channels:
                    if channel.wants_write() and channel.destination in ready_w:
                        channel.pump_out()
                    if channel.wants_read() and channel.source in ready_r:
                        channel.pump_in()
                    if channel.finished():
                        channel.close_destination()
        finally:
            self.remote.close()


def forward(winner: PendingAttempt, buffer_size: int = FORWARD_BUFFER_SIZE) -> int:
    """Hand the winning socket to the forwarder, wired to stdin/stdout."""
    forwarder = DuplexForwarder(
        SocketEnd(winner.sock),
        FdEnd(0, "stdin", nonblocking=True),
        FdEnd(1, "stdout", nonblocking=True),
        capacity=buffer_size,
        initial=winner.received,
    )
    return forwarder.run()


def run_fallback(command: List[str]):
    """Replace the process with `command`. Returns only if exec fails."""
    print("Running: " + " ".join(command), file=sys.stderr)
    sys.stderr.flush()
    # Python ignores SIGPIPE; the fallback should get the default
    previous = signal.signal(signal.SIGPIPE, signal.SIG_DFL)
    try:
        os.execvp(command[0], command)
    except OSError as e:
        print(f"{command[0]}: {e.strerror}", file=sys.stderr)
    finally:
        signal.signal(signal.SIGPIPE, previous)


def detach_session():
    try:
        os.setsid()
    except OSError as e:
        print(f"setsid(): {e.strerror}", file=sys.stderr)


class Settings(NamedTuple):
    stagger_delay: float     # seconds
    fallback_delay: float    # seconds
    default_port: int
    buffer_size: int
    family: int
    setsid: bool
    keepalive: bool
    verbose: bool


def _config_int(config, key: str, minimum: int = 0) -> int:
    value = config.get(key, DEFAULT_CONFIG[key])
    try:
        number = int(value)
    except (TypeError, ValueError):
        raise ValueError(f"{key}: expected an integer, got '{value}'") from None
    if number < minimum:
        raise ValueError(f"{key}: must be at least {minimum}, got {number}")
    return number


def _config_bool(config, key: str) -> bool:
    value = str(config.get(key, DEFAULT_CONFIG[key])).strip().lower()
    if value in ("yes", "true", "on", "1"):
        return True
    if value in ("no", "false", "off", "0"):
        return False
    raise ValueError(f"{key}: expected yes or no, got '{value}'")


def settings_from_config(config) -> Settings:
    """Validate a merged string config and convert it to Settings.

    Raises:
        ValueError: naming the offending key
    """
    family_name = str(config.get("address_family", "any")).strip().lower()
    if family_name not in ADDRESS_FAMILIES:
        raise ValueError(f"address_family: expected one of {', '.join(ADDRESS_FAMILIES)}, got '{family_name}'")
    default_port = _config_int(config, "default_port", 1)
    if default_port > 65535:
        raise ValueError(f"default_port: {default_port} out of range")
    return Settings(
        stagger_delay=_config_int(config, "stagger_delay") / 1000.0,
        fallback_delay=_config_int(config, "fallback_delay") / 1000.0,
        default_port=default_port,
        buffer_size=_config_int(config, "buffer_size", len(SSH_BANNER_PREFIX)),
        family=ADDRESS_FAMILIES[family_name],
        setsid=_config_bool(config, "setsid"),
        keepalive=_config_bool(config, "tcp_keepalive"),
        verbose=_config_bool(config, "verbose"),
    )


def load_config(config_path: str) -> Dict[str, str]:
    """Read `key=value` lines, skipping blanks and # comments. Missing file gives {}."""
    config = {}
    if not os.path.exists(config_path):
        return config
    with open(config_path, "r") as f:
        for line in f:
            line = line.strip()
            if line and not line.startswith('#') and '=' in line:
                key, value = line.split('=', 1)
                config[key.strip()] = value.strip()
    return config


def write_config(config_path: str, config: Dict[str, str]):
    config_dir = os.path.dirname(config_path)
    if config_dir and not os.path.exists(config_dir):
        os.makedirs(config_dir)
    with open(config_path, "w") as f:
        f.write("# ssh-multipath-proxy configuration file\n\n")
        f.write("# Racing (milliseconds)\n")
        f.write(f"stagger_delay={config['stagger_delay']}\n")
        f.write(f"fallback_delay={config['fallback_delay']}\n\n")
        f.write("# Port used for hosts given without one\n")
        f.write(f"default_port={config['default_port']}\n\n")
        f.write("# Forwarding buffer per direction (bytes)\n")
        f.write(f"buffer_size={config['buffer_size']}\n\n")
        f.write("# Address families: any, ipv4, ipv6\n")
        f.write(f"address_family={config['address_family']}\n\n")
        f.write("# Flags (yes/no)\n")
        f.write(f"setsid={config['setsid']}\n")
        f.write(f"tcp_keepalive={config['tcp_keepalive']}\n")
        f.write(f"verbose={config['verbose']}\n")


def create_config(config_path: str, options: Dict[str, str]) -> int:
    """Write a config file from defaults plus command line options.

    If a file already exists the changes are shown and confirmed first.
    Returns the process exit code.
    """
    config = DEFAULT_CONFIG.copy()
    config.update({k: v for k, v in options.items() if k in DEFAULT_CONFIG})
    try:
        settings_from_config(config)
    except ValueError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1

    if os.path.exists(config_path):
        print(f"Config file already exists at {config_path}.")
        old_config = load_config(config_path)
        changes = [k for k in CONFIG_KEYS if old_config.get(k) != config[k]]
        if not changes:
            print("Warning: No changes to config file. Nothing to do.", file=sys.stderr)
            return 0
        print("Current config:")
        for k in CONFIG_KEYS:
            print(f"  {k}={old_config.get(k, '')}")
        print("\nNew config:")
        for k in CONFIG_KEYS:
            if k in changes:
                print(f"  {k}=" + colored(config[k], "red"))
            else:
                print(f"  {k}={config[k]}")
        confirm = input("Overwrite config file with these changes? (Y/N): ").strip().lower()
        if confirm != 'y':
            print("Aborted config overwrite.")
            return 1

    write_config(config_path, config)
    print(f"Config file created at {config_path}")
    return 0


def parse_arguments(args: List[str]):
    """Split command line arguments into options, hosts and fallback command.

    Returns:
        (options, hosts, command) where options maps config keys to values
        and command is None when no `--` was given

    Raises:
        ValueError: on unknown options, missing option values or an empty command
    """
    options = {}
    hosts = []
    command = None
    i = 0
    while i < len(args):
        arg = args[i]
        if arg == "--":
            command = args[i + 1:]
            if not command:
                raise ValueError("Command must not be empty")
            break
        if arg in OPTION_MAP:
            if i + 1 >= len(args):
                raise ValueError(f"Option '{arg}' requires a value")
            options[OPTION_MAP[arg]] = args[i + 1]
            i += 2
            continue
        if arg in FLAG_MAP:
            key, value = FLAG_MAP[arg]
            options[key] = value
        elif arg.startswith('-'):
            raise ValueError(f"Unknown argument '{arg}'")
        else:
            hosts.append(arg)
        i += 1
    return options, hosts, command


def main(argv=None):
    global DEBUG_MODE

    argv = list(sys.argv if argv is None else argv)
    prog = os.path.basename(argv[0]) if argv else "ssh-multipath-proxy"

    try:
        options, hosts, command = parse_arguments(argv[1:])
    except ValueError as e:
        print(f"{prog}: {e}", file=sys.stderr)
        print(USAGE.format(prog=prog), file=sys.stderr)
        sys.exit(1)

    config_path = os.path.expanduser(options.pop("config", CONFIG_PATH))

    if options.pop("create_config", False):
        sys.exit(create_config(config_path, options))

    if not hosts:
        if command is not None:
            print(f"{prog}: At least one host required even with command", file=sys.stderr)
        else:
            print(USAGE.format(prog=prog), file=sys.stderr)
        sys.exit(1)

    # stdout carries the session; config problems go to stderr only
    config = DEFAULT_CONFIG.copy()
    config.update(load_config(config_path))
    config.update(options)
    try:
        settings = settings_from_config(config)
        specs = [parse_host_spec(h, settings.default_port) for h in hosts]
    except ValueError as e:
        print(f"{prog}: {e}", file=sys.stderr)
        sys.exit(1)

    DEBUG_MODE = settings.verbose
    if settings.setsid:
        detach_session()

    clock = time.monotonic
    connector = Connector(family=settings.family, keepalive=settings.keepalive, clock=clock)
    race = RaceCoordinator(specs, connector, clock=clock, stagger_delay=settings.stagger_delay)

    try:
        state = race.run(settings.fallback_delay if command else None)
        if state is not RaceState.WON and command:
            run_fallback(command)
            # exec failed, go back to the hosts still pending
            if state is RaceState.WAITING:
                state = race.wait()
        if state is RaceState.WON:
            sys.exit(forward(race.winner, settings.buffer_size))
    except PollError as e:
        print(f"{prog}: {e}", file=sys.stderr)
        race.close_all()
        sys.exit(1)

    race.close_all()
    print(f"{prog}: no usable host", file=sys.stderr)
    sys.exit(1)


if __name__ == "__main__":
    main()
