#
# Copyright Elasticsearch B.V. and/or licensed to Elasticsearch B.V. under one
# or more contributor license agreements. Licensed under the Elastic License 2.0;
# you may not use this file except in compliance with the Elastic License 2.0.
#
"""
Runs reconciliation jobs in the background, at most one per tenant.

The coordinator must be used from within the event loop running the jobs.
"""
from ldapsync.exceptions import TooManyOperationsError
from ldapsync.job import ReconciliationJob
from ldapsync.localization import MessageCatalog
from ldapsync.logger import logger
from ldapsync.models import JobStatus
from ldapsync.protocol import OperationKind
from ldapsync.settings import DirectorySettings
from ldapsync.utils import ConcurrentTasks

DEFAULT_MAX_CONCURRENT_JOBS = 4


class UnknownTenantError(Exception):
    pass


class SyncCoordinator:
    def __init__(self, contexts=None, max_concurrent_jobs=DEFAULT_MAX_CONCURRENT_JOBS):
        self.contexts = {}
        for context in contexts or []:
            self.register(context)
        self.max_concurrent_jobs = max_concurrent_jobs
        self._jobs = {}
        self._tasks = {}
        self._running = ConcurrentTasks(max_concurrency=max_concurrent_jobs)

    def register(self, context):
        self.contexts[context.tenant.id] = context

    def _context(self, tenant_id):
        try:
            return self.contexts[tenant_id]
        except KeyError:
            msg = f"Unknown tenant '{tenant_id}'"
            raise UnknownTenantError(msg) from None

    def _reap(self, tenant_id, job):
        task = self._tasks.get(tenant_id)
        if task is None or not task.done():
            return
        if job.mark_finished():
            logger.warning(
                f"Job {job.id} of tenant {tenant_id} stopped without finishing, marking it finished"
            )

    def _running_job(self, tenant_id):
        job = self._jobs.get(tenant_id)
        if job is None:
            return None
        self._reap(tenant_id, job)
        if job.state.finished:
            return None
        return job

    def _too_many_operations(self, kind, catalog):
        return JobStatus(
            id=None,
            percentage=0,
            finished=True,
            status="",
            error=catalog[TooManyOperationsError.message_key],
            warning="",
            certificate_confirmation=None,
            source="",
            operation_kind=kind,
        )

    def _read_status(self, job):
        warning = job.take_warning()
        status = JobStatus.from_state(job.state)
        status.warning = warning
        return status

    async def submit(
        self, tenant_id, settings, kind, catalog=None, requesting_user_id=None
    ):
        """Starts a job of `kind` for the tenant, unless one is running already.

        A running job of the same kind is reported back instead of starting a
        new one, and so is a running counterpart of any kind but `Save`. Any
        other running job makes the submission fail with the
        `too_many_operations` error.
        """
        context = self._context(tenant_id)
        catalog = catalog or MessageCatalog()

        running = self._running_job(tenant_id)
        if running is not None:
            if running.operation_kind == kind or (
                kind != OperationKind.SAVE
                and running.operation_kind == kind.counterpart
            ):
                logger.debug(
                    f"Tenant {tenant_id} already runs {running.operation_kind.value} job {running.id}"
                )
                return self._read_status(running)
            logger.info(
                f"Refusing {kind.value} for tenant {tenant_id}: {running.operation_kind.value} job {running.id} is running"
            )
            return self._too_many_operations(kind, catalog)

        job = ReconciliationJob(
            settings,
            context,
            kind,
            catalog=catalog,
            requesting_user_id=requesting_user_id,
        )
        task = self._running.try_put(job.run, name=f"ldapsync-{tenant_id}-{job.id}")
        if task is None:
            logger.info(
                f"Refusing {kind.value} for tenant {tenant_id}: {self.max_concurrent_jobs} jobs are running"
            )
            return self._too_many_operations(kind, catalog)

        # the previous finished job is evicted here
        self._jobs[tenant_id] = job
        self._tasks[tenant_id] = task
        logger.info(f"Started {kind.value} job {job.id} for tenant {tenant_id}")
        return JobStatus.from_state(job.state)

    async def _stored_settings(self, tenant_id):
        return await self._context(tenant_id).settings_store.load(DirectorySettings)

    async def save(self, tenant_id, settings, catalog=None, requesting_user_id=None):
        return await self.submit(
            tenant_id, settings, OperationKind.SAVE, catalog, requesting_user_id
        )

    async def save_test(self, tenant_id, settings, catalog=None, requesting_user_id=None):
        return await self.submit(
            tenant_id, settings, OperationKind.SAVE_TEST, catalog, requesting_user_id
        )

    async def sync(self, tenant_id, catalog=None, requesting_user_id=None):
        settings = await self._stored_settings(tenant_id)
        return await self.submit(
            tenant_id, settings, OperationKind.SYNC, catalog, requesting_user_id
        )

    async def sync_test(self, tenant_id, catalog=None, requesting_user_id=None):
        settings = await self._stored_settings(tenant_id)
        return await self.submit(
            tenant_id, settings, OperationKind.SYNC_TEST, catalog, requesting_user_id
        )

    def status(self, tenant_id):
        """Status of the tenant's latest job, or `None`.

        Every tracked job is reaped first. The warning is reported once:
        reading it clears it.
        """
        for tracked_tenant_id, tracked_job in self._jobs.items():
            self._reap(tracked_tenant_id, tracked_job)

        job = self._jobs.get(tenant_id)
        if job is None:
            return None
        return self._read_status(job)

    def job(self, tenant_id):
        return self._jobs.get(tenant_id)

    def cancel(self, tenant_id):
        job = self._running_job(tenant_id)
        if job is None:
            return False
        job.cancel()
        return True

    async def join(self):
        await self._running.join()

    async def shutdown(self):
        for tenant_id in list(self._jobs):
            self.cancel(tenant_id)
        await self.join()
