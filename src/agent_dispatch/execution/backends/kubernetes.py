"""Kubernetes job backend.

Runs each execution as a ``batch/v1`` Job in one namespace and reads logs
from the Job's pod. Uses the official ``kubernetes`` client; its calls are
blocking, so every call runs in a worker thread via ``asyncio.to_thread``.

.. code-block:: text

    create_job(id)      → POST  jobs                (409 → BackendError AlreadyExists)
    get_job_status(id)  → GET   jobs/<name>/status  (404 → None)
    delete_job(id)      → DELETE jobs/<name>, propagationPolicy=Background (404 → False)
    get_job_logs(id)    → GET   pods?labelSelector=… then pods/<pod>/log (none → None)
    list_jobs()         → GET   jobs?labelSelector=app.kubernetes.io/name=<prefix>,app.kubernetes.io/component=agent

Client bootstrap order: explicit kubeconfig, in-cluster config when
``KUBERNETES_SERVICE_HOST`` is set, then the default kubeconfig. If none
loads, the backend stays unconfigured and every call raises
:class:`BackendUnconfiguredError` without touching the network.

Tags:
    execution, backends, kubernetes, jobs, agent-dispatch

Doc-Types:
    api-reference
"""

from __future__ import annotations

import asyncio
import os
from datetime import datetime
from typing import Any

from kubernetes import client, config
from kubernetes.client.exceptions import ApiException

from agent_dispatch.core.errors import BackendError
from agent_dispatch.core.logging import get_logger
from agent_dispatch.core.settings import DispatchSettings
from agent_dispatch.execution.backends._base import BaseJobBackend
from agent_dispatch.execution.backends._types import (
    COMPONENT_LABEL,
    COMPONENT_VALUE,
    NAME_LABEL,
    JobCounters,
    JobHandle,
    JobStatus,
    ResourceHints,
    derive_job_state,
    execution_id_label,
)

logger = get_logger(__name__)

AGENT_CONTAINER = "agent"
AGENT_USER_ID = 1000

# (env var, key in the secret)
SECRET_ENV = (
    ("ANTHROPIC_API_KEY", "ANTHROPIC_API_KEY"),
    ("AWS_ACCESS_KEY_ID", "AWS_ACCESS_KEY_ID"),
    ("AWS_SECRET_ACCESS_KEY", "AWS_SECRET_ACCESS_KEY"),
)
# (env var, key in the config map)
CONFIG_MAP_ENV = (
    ("S3_BUCKET", "S3_BUCKET"),
    ("S3_REGION", "S3_REGION"),
)


def load_client_config(kubeconfig: str | None = None) -> None:
    """Load client configuration; raises when no source is usable."""
    if kubeconfig:
        config.load_kube_config(config_file=kubeconfig)
    elif os.environ.get("KUBERNETES_SERVICE_HOST"):
        config.load_incluster_config()
    else:
        config.load_kube_config()


class KubernetesJobBackend(BaseJobBackend):
    """Job backend on a Kubernetes cluster.

    Pass ``batch_api`` / ``core_api`` to use pre-built clients (tests pass
    mocks); otherwise the client config is loaded from the environment.
    """

    backend_name = "kubernetes"

    def __init__(
        self,
        settings: DispatchSettings,
        *,
        batch_api: Any = None,
        core_api: Any = None,
    ) -> None:
        super().__init__(job_name_prefix=settings.job_name_prefix)
        self.settings = settings
        self.namespace = settings.k8s_namespace
        self._batch = batch_api
        self._core = core_api

        if self._batch is None or self._core is None:
            try:
                load_client_config(settings.kubeconfig)
            except (config.ConfigException, OSError, TypeError, ValueError) as exc:
                self._configured = False
                self._config_error = str(exc)
                logger.warning(
                    "kubernetes_unconfigured",
                    namespace=self.namespace,
                    error=str(exc),
                )
                return
            self._batch = self._batch or client.BatchV1Api()
            self._core = self._core or client.CoreV1Api()

        logger.info("kubernetes_backend_ready", namespace=self.namespace)

    # -- manifest ----------------------------------------------------------

    @property
    def execution_label(self) -> str:
        return execution_id_label(self.job_name_prefix)

    def labels_for(self, execution_id: str) -> dict[str, str]:
        return {
            NAME_LABEL: self.job_name_prefix,
            COMPONENT_LABEL: COMPONENT_VALUE,
            self.execution_label: execution_id,
        }

    def callback_url(self, execution_id: str) -> str:
        s = self.settings
        return f"{s.backend_service_url}{s.api_prefix}/executions/{execution_id}/callback"

    def _env(self, execution_id: str, prompt: str) -> list[client.V1EnvVar]:
        env = [
            client.V1EnvVar(name="EXECUTION_ID", value=execution_id),
            client.V1EnvVar(name="TASK_PROMPT", value=prompt),
            client.V1EnvVar(name="CALLBACK_URL", value=self.callback_url(execution_id)),
        ]
        for var, key in SECRET_ENV:
            env.append(client.V1EnvVar(
                name=var,
                value_from=client.V1EnvVarSource(
                    secret_key_ref=client.V1SecretKeySelector(name=self.settings.secret_name, key=key),
                ),
            ))
        for var, key in CONFIG_MAP_ENV:
            env.append(client.V1EnvVar(
                name=var,
                value_from=client.V1EnvVarSource(
                    config_map_key_ref=client.V1ConfigMapKeySelector(
                        name=self.settings.config_map_name, key=key,
                    ),
                ),
            ))
        return env

    def build_job(
        self,
        execution_id: str,
        prompt: str,
        resources: ResourceHints | None = None,
        timeout_seconds: int | None = None,
    ) -> client.V1Job:
        """Build the Job object for an execution."""
        s = self.settings
        labels = self.labels_for(execution_id)
        hints = resources or ResourceHints()

        container = client.V1Container(
            name=AGENT_CONTAINER,
            image=s.agent_image,
            image_pull_policy="Always",
            env=self._env(execution_id, prompt),
            resources=client.V1ResourceRequirements(
                requests={"memory": s.memory_request, "cpu": s.cpu_request},
                limits={
                    "memory": hints.memory or s.memory_limit,
                    "cpu": hints.cpu or s.cpu_limit,
                },
            ),
            security_context=client.V1SecurityContext(
                run_as_non_root=True,
                run_as_user=AGENT_USER_ID,
                allow_privilege_escalation=False,
            ),
        )
        return client.V1Job(
            api_version="batch/v1",
            kind="Job",
            metadata=client.V1ObjectMeta(
                name=self.job_name(execution_id),
                namespace=self.namespace,
                labels=labels,
            ),
            spec=client.V1JobSpec(
                backoff_limit=0,
                ttl_seconds_after_finished=s.job_ttl_seconds,
                active_deadline_seconds=timeout_seconds or s.job_timeout_seconds,
                template=client.V1PodTemplateSpec(
                    metadata=client.V1ObjectMeta(labels=labels),
                    spec=client.V1PodSpec(
                        service_account_name=s.service_account,
                        restart_policy="Never",
                        containers=[container],
                    ),
                ),
            ),
        )

    # -- backend operations ------------------------------------------------

    async def _do_create_job(
        self,
        execution_id: str,
        prompt: str,
        resources: ResourceHints | None,
        timeout_seconds: int | None,
    ) -> JobHandle:
        body = self.build_job(execution_id, prompt, resources, timeout_seconds)
        name = body.metadata.name
        try:
            created = await asyncio.to_thread(
                self._batch.create_namespaced_job,
                namespace=self.namespace,
                body=body,
            )
        except ApiException as exc:
            if exc.status == 409:
                raise BackendError(
                    f"Job {name} already exists",
                    details={"backend": self.backend_name, "reason": "AlreadyExists", "jobName": name},
                    cause=exc,
                ) from exc
            raise
        return JobHandle(
            name=name,
            execution_id=execution_id,
            namespace=self.namespace,
            created_at=_creation_timestamp(created),
            labels=dict(body.metadata.labels),
        )

    async def _do_get_job_status(self, execution_id: str) -> JobStatus | None:
        try:
            job = await asyncio.to_thread(
                self._batch.read_namespaced_job_status,
                name=self.job_name(execution_id),
                namespace=self.namespace,
            )
        except ApiException as exc:
            if exc.status == 404:
                return None
            raise
        state = derive_job_state(_counters(job))
        pod_name = await self._first_pod_name(execution_id)
        return JobStatus(state=state, pod_name=pod_name)

    async def _do_delete_job(self, execution_id: str) -> bool:
        try:
            await asyncio.to_thread(
                self._batch.delete_namespaced_job,
                name=self.job_name(execution_id),
                namespace=self.namespace,
                propagation_policy="Background",
            )
        except ApiException as exc:
            if exc.status == 404:
                return False
            raise
        return True

    async def _do_get_job_logs(self, execution_id: str) -> str | None:
        pod_name = await self._first_pod_name(execution_id)
        if pod_name is None:
            return None
        try:
            return await asyncio.to_thread(
                self._core.read_namespaced_pod_log,
                name=pod_name,
                namespace=self.namespace,
                container=AGENT_CONTAINER,
            )
        except ApiException as exc:
            logger.warning("pod_log_read_failed", pod=pod_name, status=exc.status)
            return None

    async def _do_list_jobs(self) -> list[JobHandle]:
        result = await asyncio.to_thread(
            self._batch.list_namespaced_job,
            namespace=self.namespace,
            label_selector=f"{NAME_LABEL}={self.job_name_prefix},{COMPONENT_LABEL}={COMPONENT_VALUE}",
        )
        handles = []
        for job in result.items or []:
            labels = dict(job.metadata.labels or {})
            execution_id = labels.get(self.execution_label)
            if not execution_id:
                continue
            handles.append(JobHandle(
                name=job.metadata.name,
                execution_id=execution_id,
                namespace=self.namespace,
                state=derive_job_state(_counters(job)),
                created_at=_creation_timestamp(job),
                labels=labels,
            ))
        return handles

    # -- helpers -----------------------------------------------------------

    async def _first_pod_name(self, execution_id: str) -> str | None:
        try:
            pods = await asyncio.to_thread(
                self._core.list_namespaced_pod,
                namespace=self.namespace,
                label_selector=f"{self.execution_label}={execution_id}",
            )
        except ApiException as exc:
            logger.warning("pod_lookup_failed", execution_id=execution_id, status=exc.status)
            return None
        if not pods.items:
            return None
        return pods.items[0].metadata.name


def _counters(job: Any) -> JobCounters:
    status = getattr(job, "status", None)
    if status is None:
        return JobCounters()
    return JobCounters(active=status.active, succeeded=status.succeeded, failed=status.failed)


def _creation_timestamp(job: Any) -> datetime | None:
    metadata = getattr(job, "metadata", None)
    value = getattr(metadata, "creation_timestamp", None)
    return value if isinstance(value, datetime) else None


__all__ = ["KubernetesJobBackend", "load_client_config"]
