"""
Instance environment discovered once per restore.

Server name, default data/log/backup paths, product version and the HADR flag
are read from the instance at the start of a restore and passed explicitly to
the components that need them.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

from .backends.base import InstanceBackend

logger = logging.getLogger(__name__)


def join_path(directory: str, name: str) -> str:
    """Join a Windows directory and a file name with exactly one separator."""
    return directory.rstrip("\\/") + "\\" + name


@dataclass(frozen=True)
class InstanceEnvironment:
    """Instance-wide facts used by the restore.

    Attributes:
        server_name: @@SERVERNAME of the local instance
        product_version: Full product version string (15.0.4123.1)
        data_path: Default data file directory
        log_path: Default log file directory
        backup_path: Default backup directory
        hadr_enabled: Whether Always On availability groups are enabled
    """

    server_name: str
    product_version: str
    data_path: str
    log_path: str
    backup_path: str
    hadr_enabled: bool

    @property
    def major_version(self) -> int:
        return int(self.product_version.split(".")[0])

    @classmethod
    def discover(cls, backend: InstanceBackend) -> InstanceEnvironment:
        props = backend.instance_properties()
        environment = cls(
            server_name=props.server_name,
            product_version=props.product_version,
            data_path=props.data_path,
            log_path=props.log_path,
            backup_path=props.backup_path,
            hadr_enabled=props.hadr_enabled,
        )
        logger.debug(
            "Instance environment discovered",
            extra={
                "server": environment.server_name,
                "version": environment.product_version,
                "data_path": environment.data_path,
                "log_path": environment.log_path,
            },
        )
        return environment
