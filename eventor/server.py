"""
Eventor Broker Server

TCP accept loop for the broker: one listening socket, one thread per
accepted connection, each running a ClientSession until its peer goes
away. A failing connection never stops the accept loop.

Also hosts the command line interface:
    eventor serve     run the broker
    eventor probe     query a running broker
    eventor version   print the version
"""

import socket
import threading
from pathlib import Path
from typing import Dict, List, Optional, Tuple

import typer
from loguru import logger
from rich.console import Console
from rich.table import Table

from eventor import __version__
from eventor.client import BrokerClient
from eventor.config import BrokerConfig, DEFAULT_HOST, DEFAULT_PORT
from eventor.connection import ClientSession
from eventor.handlers import Dispatcher
from eventor.logging import init_logging


# =====================================================================
#  Server
# =====================================================================

class BrokerServer:
    """Listens for clients and hands each connection to its own session thread."""

    ACCEPT_POLL_INTERVAL = 0.5

    def __init__(self, config: Optional[BrokerConfig] = None,
                 dispatcher: Optional[Dispatcher] = None):
        self.config = (config or BrokerConfig()).validate()
        self.dispatcher = dispatcher or Dispatcher()

        self._listener: Optional[socket.socket] = None
        self._sessions: Dict[int, ClientSession] = {}
        self._counter = 0
        self._lock = threading.RLock()
        self._stopping = threading.Event()

    @property
    def address(self) -> Tuple[str, int]:
        if self._listener is None:
            raise RuntimeError("Server is not listening")
        host, port = self._listener.getsockname()[:2]
        return host, port

    @property
    def active_sessions(self) -> int:
        with self._lock:
            return len(self._sessions)

    def start(self) -> Tuple[str, int]:
        """Bind and listen. Returns the bound (host, port).

        A server that has been shut down cannot be started again.
        """
        with self._lock:
            if self._stopping.is_set():
                raise RuntimeError("Server has been shut down")
            if self._listener is not None:
                return self.address
            sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
            sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
            try:
                sock.bind((self.config.host, self.config.port))
                sock.listen(self.config.backlog)
            except OSError:
                sock.close()
                raise
            # bounded accept() so shutdown() is noticed
            sock.settimeout(self.ACCEPT_POLL_INTERVAL)
            self._listener = sock

        host, port = self.address
        logger.info("Eventor listening on {}:{}", host, port)
        return host, port

    def serve_forever(self) -> None:
        """Accept connections until shutdown() is called.

        Returns at once if shutdown() has already been called.
        """
        with self._lock:
            if self._stopping.is_set():
                return
            if self._listener is None:
                self.start()
            listener = self._listener
        try:
            while not self._stopping.is_set():
                try:
                    conn, addr = listener.accept()
                except socket.timeout:
                    continue
                except OSError as e:
                    if self._stopping.is_set():
                        break
                    logger.error("Error accepting connection: {}", e)
                    continue
                self._spawn(conn, addr)
        finally:
            self._close_listener()

    def _spawn(self, conn: socket.socket, addr) -> None:
        conn.settimeout(None)
        session = ClientSession(conn, self.dispatcher, peer=f"{addr[0]}:{addr[1]}")
        with self._lock:
            self._counter += 1
            session_id = self._counter
            self._sessions[session_id] = session
        thread = threading.Thread(
            target=self._serve_client, args=(session_id, session),
            name=f"eventor-session-{session_id}", daemon=True,
        )
        thread.start()

    def _serve_client(self, session_id: int, session: ClientSession) -> None:
        logger.debug("Accepted connection #{} from {}", session_id, session.peer)
        try:
            session.run()
        except Exception:
            logger.exception("Unexpected error serving {}", session.peer)
        finally:
            session.close()
            with self._lock:
                self._sessions.pop(session_id, None)

    def _close_listener(self) -> None:
        with self._lock:
            listener, self._listener = self._listener, None
        if listener is not None:
            listener.close()

    def shutdown(self) -> None:
        """Stop accepting and close every open session."""
        self._stopping.set()
        self._close_listener()
        with self._lock:
            sessions = list(self._sessions.values())
        for session in sessions:
            session.close()
        logger.info("Eventor stopped ({} session(s) closed)", len(sessions))

    def status(self) -> List[dict]:
        with self._lock:
            return [s.status() for s in self._sessions.values()]


# =====================================================================
#  CLI
# =====================================================================

console = Console()
app = typer.Typer(help="Eventor: minimal Kafka wire protocol broker", no_args_is_help=True)


@app.command()
def serve(
    host: str = typer.Option(DEFAULT_HOST, "--host", envvar="EVENTOR_HOST",
                             help="Interface to listen on"),
    port: int = typer.Option(DEFAULT_PORT, "--port", envvar="EVENTOR_PORT",
                             help="TCP port (0 picks a free port)"),
    backlog: int = typer.Option(128, "--backlog", help="Listen backlog"),
    log_level: str = typer.Option("INFO", "--log-level", envvar="EVENTOR_LOG_LEVEL"),
    log_file: Optional[Path] = typer.Option(None, "--log-file", envvar="EVENTOR_LOG_FILE"),
) -> None:
    """Run the broker in the foreground until interrupted."""
    config = BrokerConfig(host=host, port=port, backlog=backlog,
                          log_level=log_level, log_file=log_file)
    try:
        config.validate()
    except ValueError as e:
        console.print(f"[red]{e}[/red]")
        raise typer.Exit(code=2)

    init_logging(config.log_level, config.log_file)
    server = BrokerServer(config)
    try:
        server.start()
    except OSError as e:
        logger.error("Cannot listen on {}:{}: {}", config.host, config.port, e)
        raise typer.Exit(code=1)

    try:
        server.serve_forever()
    except KeyboardInterrupt:
        logger.info("Interrupted, shutting down")
    finally:
        server.shutdown()


@app.command()
def probe(
    host: str = typer.Option(DEFAULT_HOST, "--host", envvar="EVENTOR_HOST"),
    port: int = typer.Option(DEFAULT_PORT, "--port", envvar="EVENTOR_PORT"),
    topic: Optional[List[str]] = typer.Option(None, "--topic", help="Topic to describe (repeatable)"),
    api_version: int = typer.Option(4, "--api-version", help="ApiVersions request version"),
    timeout: float = typer.Option(5.0, "--timeout"),
) -> None:
    """Send ApiVersions (and DescribeTopicPartitions per --topic) to a broker."""
    client = BrokerClient(host, port)
    try:
        client.connect(timeout=timeout)
    except ConnectionError as e:
        console.print(f"[red]{e}[/red]")
        raise typer.Exit(code=1)

    try:
        versions = client.api_versions(api_version)
        table = Table(title=f"ApiVersions v{api_version} @ {host}:{port} ({versions['error']})")
        table.add_column("api_key", justify="right")
        table.add_column("name")
        table.add_column("min", justify="right")
        table.add_column("max", justify="right")
        for key, api in sorted(versions["apis"].items()):
            table.add_row(str(key), api["name"], str(api["min_version"]), str(api["max_version"]))
        console.print(table)

        for name in topic or []:
            result = client.describe_topic_partitions([name])
            for t in result["topics"]:
                console.print(
                    f"topic [bold]{t['name']}[/bold]: {t['error']} "
                    f"(partitions={t['partition_count']}, internal={t['is_internal']})"
                )
    except (OSError, ValueError) as e:
        console.print(f"[red]Probe failed: {e}[/red]")
        raise typer.Exit(code=1)
    finally:
        client.disconnect()


@app.command()
def version() -> None:
    """Print the Eventor version."""
    console.print(f"eventor {__version__}")


# =====================================================================
#  ENTRY POINT
# =====================================================================

def main():
    app()


if __name__ == "__main__":
    main()
