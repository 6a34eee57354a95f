"""Process tree helpers for hatch-ports."""

import signal

import psutil

from .logging import setup_logger

logger = setup_logger(__name__)


def pid_alive(pid: int) -> bool:
    """Check whether a process id refers to a running process.

    Zombies count as dead. PID reuse is not detected.

    Args:
        pid: Process id

    Returns:
        True if the process exists and is not a zombie
    """
    if pid <= 0:
        return False
    try:
        return psutil.Process(pid).status() != psutil.STATUS_ZOMBIE
    except psutil.NoSuchProcess:
        return False
    except psutil.AccessDenied:
        # Owned by another user, but it exists
        return True


def kill_tree(pid: int, sig: int = signal.SIGTERM) -> list[psutil.Process]:
    """Send a signal to a process and all of its descendants.

    Descendants are signalled depth-first, children before their parent, so
    no child is reparented before it has been signalled.

    Args:
        pid: Root process id
        sig: Signal to send

    Returns:
        Every process that was signalled, root last
    """
    try:
        root = psutil.Process(pid)
    except psutil.NoSuchProcess:
        return []

    try:
        children = root.children()
    except (psutil.NoSuchProcess, psutil.AccessDenied):
        children = []

    signalled: list[psutil.Process] = []
    for child in children:
        signalled.extend(kill_tree(child.pid, sig))

    try:
        root.send_signal(sig)
        signalled.append(root)
    except psutil.NoSuchProcess:
        pass
    except psutil.AccessDenied as e:
        logger.warning(f"Permission denied sending signal {sig} to PID {pid}: {e}")

    return signalled


def terminate_tree(pid: int, grace_period: float = 0.5) -> bool:
    """Terminate a process tree gracefully, force killing survivors.

    Args:
        pid: Root process id
        grace_period: Seconds to wait after SIGTERM before SIGKILL

    Returns:
        True if every process in the tree is gone
    """
    signalled = kill_tree(pid, signal.SIGTERM)
    if not signalled:
        return not pid_alive(pid)

    _, alive = psutil.wait_procs(signalled, timeout=grace_period)
    if alive:
        logger.warning(
            f"{len(alive)} process(es) under PID {pid} ignored SIGTERM, force killing"
        )
        for proc in alive:
            try:
                proc.kill()
            except psutil.NoSuchProcess:
                pass
            except psutil.AccessDenied as e:
                logger.error(f"Failed to kill PID {proc.pid}: {e}")
        _, alive = psutil.wait_procs(alive, timeout=max(grace_period, 1.0))

    remaining = [proc.pid for proc in alive if pid_alive(proc.pid)]
    if remaining:
        logger.error(f"Processes still running after SIGKILL: {remaining}")
        return False
    return True
