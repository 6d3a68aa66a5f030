from __future__ import annotations

import logging
from typing import Optional

import psutil

logger = logging.getLogger("chatrelay.process_control")


def kill_process_tree(pid: int, timeout: float = 5.0) -> bool:
    """Kill *pid* and all of its descendants. Returns False if *pid* was already gone."""
    try:
        parent = psutil.Process(pid)
    except psutil.NoSuchProcess:
        return False

    try:
        procs = parent.children(recursive=True)
    except psutil.Error:
        procs = []
    procs.append(parent)

    for proc in procs:
        try:
            proc.kill()
        except psutil.NoSuchProcess:
            pass
        except psutil.AccessDenied:
            logger.warning("Not permitted to kill pid %s", proc.pid)

    _gone, alive = psutil.wait_procs(procs, timeout=timeout)
    if alive:
        logger.warning("Processes still alive after kill: %s", [p.pid for p in alive])
    logger.info("Killed process tree rooted at %s (%d processes)", pid, len(procs))
    return True


def find_listener_pid(port: int) -> Optional[int]:
    """Pid of the process listening on local TCP *port*, if it can be resolved."""
    try:
        connections = psutil.net_connections(kind="tcp")
    except (psutil.AccessDenied, OSError) as exc:
        logger.debug("Cannot enumerate connections: %s", exc)
        return None
    for conn in connections:
        if conn.status != psutil.CONN_LISTEN or not conn.laddr:
            continue
        if conn.laddr.port == port and conn.pid:
            return conn.pid
    return None
