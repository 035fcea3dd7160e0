"""Durable Devdocker container entrypoint package.

The console scripts and the tests use the package level names, the modules
below hold the implementation.
"""

from devdocker.entrypoint import (
    DEFAULT_HANDOFF,
    SERVICES,
    STATE_FILENAME,
    ConfigError,
    DeclaredConfig,
    DevdockerError,
    MySQLController,
    PersistedState,
    PostgresController,
    ReconcileError,
    ServiceControlError,
    ServiceController,
    ServiceProfile,
    apply_runtime_user,
    fix_permissions,
    gather_env,
    handoff,
    main,
    make_controller,
    reconcile,
    wait_until_ready,
)
from devdocker.entrypoint import __all__
