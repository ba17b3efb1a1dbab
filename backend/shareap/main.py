import logging
import os
import signal
import sys
from typing import Callable, Dict, List, Optional

from shareap import cli, state
from shareap.config import build_session_config, load_config
from shareap.errors import SessionInterrupted, ShareapError
from shareap.logging import bind_session, setup_logging
from shareap.session import Session
from shareap.teardown import TeardownCoordinator

log = logging.getLogger("shareap.main")

_TERMINATION_SIGNALS = (signal.SIGTERM, signal.SIGINT, signal.SIGHUP)


def _install_signal_handlers(coordinator: TeardownCoordinator) -> Callable[[], None]:
    """
    Route termination signals to the teardown coordinator. Returns a callable
    restoring the previous handlers.
    """
    previous: Dict[int, object] = {}

    def _handler(signum, _frame):
        try:
            sig_name = signal.Signals(signum).name
        except ValueError:
            sig_name = str(signum)
        log.info("shutdown_signal:%s", sig_name, extra={"reason": sig_name})
        if coordinator.run(f"signal:{sig_name}"):
            raise SessionInterrupted(sig_name)

    for sig in _TERMINATION_SIGNALS:
        previous[sig] = signal.getsignal(sig)
        signal.signal(sig, _handler)

    def _restore() -> None:
        for sig, handler in previous.items():
            signal.signal(sig, handler)

    return _restore


def _list_running() -> int:
    sessions = state.list_running()
    if not sessions:
        print("No running sessions.")
        return 0
    for rec in sessions:
        print(
            "{pid}\t{wifi}\t{virt}\t{method}\t{phase}".format(
                pid=rec.get("pid"),
                wifi=rec.get("wifi_iface") or "-",
                virt=rec.get("virt_iface") or "-",
                method=rec.get("share_method") or "-",
                phase=rec.get("phase") or "-",
            )
        )
    return 0


def _stop_running(target: str) -> int:
    rec = state.find_running(target)
    if rec is None:
        print(f"ERROR: no running session matches '{target}'", file=sys.stderr)
        return 1
    pid = int(rec["pid"])
    try:
        os.kill(pid, signal.SIGTERM)
    except ProcessLookupError:
        print(f"ERROR: session pid {pid} already exited", file=sys.stderr)
        return 1
    log.info("stop_requested", extra={"pid": pid, "ifname": rec.get("wifi_iface")})
    return 0


def _fail(exc: Exception) -> int:
    log.error("%s", exc, extra={"reason": getattr(exc, "code", "fatal")})
    print(f"ERROR: {exc}", file=sys.stderr)
    return 1


def main(argv: Optional[List[str]] = None) -> int:
    try:
        args = cli.parse_args(argv)
    except ShareapError as exc:
        setup_logging()
        print(cli.HELP_TEXT, file=sys.stderr)
        return _fail(exc)

    setup_logging(args.log_level)

    if args.help:
        print(cli.HELP_TEXT)
        return 1
    if args.list_running:
        return _list_running()
    if args.stop:
        return _stop_running(args.stop)

    # Nothing below touches the system until session.run().
    try:
        defaults = load_config()
        cfg = build_session_config(cli.resolve_options(args, defaults), defaults)
        bind_session(f"{cfg.wifi_iface}:{os.getpid()}")
        session = Session(cfg)
        session.preflight()
    except ShareapError as exc:
        return _fail(exc)

    coordinator = TeardownCoordinator(session)
    restore = _install_signal_handlers(coordinator)
    try:
        return session.run(coordinator)
    except SessionInterrupted as exc:
        log.info("session_interrupted", extra={"reason": exc.sig_name})
        return 0
    except (RuntimeError, OSError) as exc:
        return _fail(exc)
    finally:
        restore()
        if not coordinator.report.ok:
            print("WARNING: cleanup incomplete: " + "; ".join(coordinator.report.failed), file=sys.stderr)


if __name__ == "__main__":
    sys.exit(main())
