"""
Run entry point.

Wires settings into the transport, adapter, resolvers, verification runner,
scheduler and cleanup coordinator, and runs one verification pass.
"""
import logging
from typing import List, Optional, Sequence

from surebackup.core.config import Settings, settings as default_settings
from surebackup.core.logging_handler import (
    CONSOLE_HANDLER_NAME,
    LoggingContext,
    attach_handler,
    detach_handler,
    setup_file_logging,
    setup_logging,
)
from surebackup.models.plan import RecoveryPlan, VerificationOptions
from surebackup.models.restore import RestoreTarget
from surebackup.models.session import RunResult
from surebackup.services.api import ApiTransport, RetryPolicy, create_protocol_adapter
from surebackup.services.hypervisor import NetworkResolver, Poller, TaskWaiter, VmResolver
from surebackup.services.recovery import (
    BackupCatalog,
    BootOrderScheduler,
    CleanupCoordinator,
    ConfigurationError,
    DryRunWorker,
    OrchestrationContext,
    RecoveryWorker,
    SessionJournal,
    SessionStateMachine,
)
from surebackup.services.verification import VerificationRunner

logger = logging.getLogger(__name__)


def build_transport(config: Settings) -> ApiTransport:
    """Create the HTTP transport from settings."""
    if not config.API_BASE_URL:
        raise ConfigurationError("API_BASE_URL is not set")
    if not config.API_TOKEN and not config.API_USERNAME:
        raise ConfigurationError("Set API_TOKEN, or API_USERNAME and API_PASSWORD")

    return ApiTransport(
        base_url=config.API_BASE_URL,
        username=config.API_USERNAME,
        password=config.API_PASSWORD,
        token=config.API_TOKEN,
        verify_tls=config.VERIFY_TLS,
        timeout=config.REQUEST_TIMEOUT,
        retry_policy=RetryPolicy(
            retry_count=config.RETRY_COUNT,
            backoff_cap=config.RETRY_BACKOFF_CAP,
        ),
    )


def configure_logging(config: Settings) -> List[logging.Handler]:
    """
    Set up console and rotating file logging for a run.

    DEBUG forces the DEBUG level. A console handler that is already attached
    is reused.

    Returns:
        The handlers this call attached
    """
    level = "DEBUG" if config.DEBUG else config.LOG_LEVEL
    package_logger = logging.getLogger("surebackup")
    package_logger.setLevel(getattr(logging, level.upper(), logging.INFO))

    handlers = []
    if not any(h.get_name() == CONSOLE_HANDLER_NAME for h in package_logger.handlers):
        handlers.append(setup_logging(level))

    if config.LOG_FILE_DIR:
        file_handler = setup_file_logging(
            config.LOG_FILE_DIR,
            max_bytes=config.LOG_FILE_MAX_BYTES,
            backup_count=config.LOG_FILE_BACKUP_COUNT,
            level=level,
        )
        if file_handler is not None:
            handlers.append(file_handler)
    return handlers


def default_plan(config: Settings) -> RecoveryPlan:
    """Plan with no tiers whose verification defaults come from settings."""
    return RecoveryPlan(defaults=VerificationOptions(
        ping_attempts=config.PING_ATTEMPTS,
        ports=list(config.TEST_PORTS),
        dns=config.TEST_DNS,
        http_endpoints=list(config.TEST_HTTP_ENDPOINTS),
        script_path=config.TEST_SCRIPT_PATH,
    ))


def open_journal(config: Settings) -> Optional[SessionJournal]:
    """Open the session journal, or None when JOURNAL_URL is empty."""
    if not config.JOURNAL_URL:
        return None
    return SessionJournal(config.JOURNAL_URL, echo=config.JOURNAL_ECHO)


def run_surebackup(
    catalog: BackupCatalog,
    plan: Optional[RecoveryPlan] = None,
    config: Optional[Settings] = None,
    targets: Optional[Sequence[RestoreTarget]] = None,
    transport: Optional[ApiTransport] = None,
    journal: Optional[SessionJournal] = None,
    log_handler: Optional[logging.Handler] = None
) -> RunResult:
    """
    Run one verification pass over the catalog's restore targets.

    Args:
        catalog: Backup catalog supplying restore targets and performing restores
        plan: Boot tiers and verification options; defaults to settings
        config: Settings to use; defaults to the global settings
        targets: Restore targets; defaults to ``catalog.list_restore_targets()``
        transport: Pre-built transport; built from settings when omitted
        journal: Session journal; opened from JOURNAL_URL when omitted
        log_handler: Handler (e.g. InMemoryLogHandler) attached for the run

    Returns:
        Aggregate run result. Configuration problems raise before any
        VM is restored.
    """
    config = config or default_settings
    plan = plan or default_plan(config)

    owns_transport = transport is None
    transport = transport or build_transport(config)
    owns_journal = journal is None and not config.DRY_RUN
    if owns_journal:
        journal = open_journal(config)

    context = OrchestrationContext(journal=journal, dry_run=config.DRY_RUN)

    run_handlers = configure_logging(config)
    if log_handler is not None:
        attach_handler(log_handler, config.LOG_LEVEL)

    try:
        with LoggingContext(run_id=context.run_id):
            logger.info(f"Starting {config.APP_NAME} v{config.APP_VERSION} run {context.run_id}"
                        f"{' (dry run)' if config.DRY_RUN else ''}")

            adapter = create_protocol_adapter(transport, config.API_GENERATION, config.PAGE_SIZE)
            poller = Poller(interval=config.POLL_INTERVAL)
            task_waiter = TaskWaiter(adapter, poller, timeout=config.TASK_TIMEOUT)
            vm_resolver = VmResolver(adapter, task_waiter, poller)
            network_resolver = NetworkResolver(adapter, vm_resolver, config.ISOLATED_NETWORK_PATTERNS)

            machine = SessionStateMachine(context)
            cleanup = CleanupCoordinator(context, machine, vm_resolver)

            if journal is not None and not config.DRY_RUN:
                cleanup.sweep_journal(journal)

            if targets is None:
                targets = catalog.list_restore_targets()
            targets = _unique_targets(targets, context)
            if not targets:
                logger.warning("No restore targets to verify")

            network, warnings = network_resolver.resolve_isolated_network(
                network_id=config.ISOLATED_NETWORK_ID,
                name=config.ISOLATED_NETWORK_NAME,
            )
            context.add_warnings(warnings)

            runner = VerificationRunner(
                vm_resolver,
                ping_timeout=config.PING_TIMEOUT,
                port_timeout=config.PORT_TIMEOUT,
                http_timeout=config.HTTP_TIMEOUT,
                script_timeout=config.SCRIPT_TIMEOUT,
                http_verify_tls=config.TEST_HTTP_VERIFY_TLS,
            )
            worker_class = DryRunWorker if config.DRY_RUN else RecoveryWorker
            worker = worker_class(
                context,
                machine,
                catalog,
                network,
                network_resolver,
                vm_resolver=vm_resolver,
                task_waiter=task_waiter,
                runner=runner,
                options_for=plan.verification_for,
                restore_method=config.RESTORE_METHOD,
                name_suffix=config.RECOVERY_NAME_SUFFIX,
                restore_timeout=config.TASK_TIMEOUT,
                power_on_timeout=config.POWER_ON_TIMEOUT,
                ip_wait_timeout=config.IP_WAIT_TIMEOUT,
            )

            scheduler = BootOrderScheduler(
                context,
                worker,
                cleanup,
                max_concurrent=config.MAX_CONCURRENT_RECOVERIES,
                continue_on_failure=config.CONTINUE_ON_FAILURE,
            )
            return scheduler.run(targets, plan.tier_for)

    finally:
        if log_handler is not None:
            detach_handler(log_handler)
        for handler in run_handlers:
            detach_handler(handler)
            handler.close()
        if owns_transport:
            transport.close()
        if owns_journal and journal is not None:
            journal.close()


def _unique_targets(targets: Sequence[RestoreTarget], context: OrchestrationContext) -> List[RestoreTarget]:
    """Drop repeated workloads; two sessions for one VM would share a recovery name."""
    seen = set()
    unique = []
    for target in targets:
        key = target.name.lower()
        if key in seen:
            context.add_warning(f"{target.name} is listed more than once; only the first restore point is verified")
            continue
        seen.add(key)
        unique.append(target)
    return unique
