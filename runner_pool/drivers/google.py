import logging
import random
import re
import time
import uuid
from collections.abc import Iterable, Mapping
from datetime import UTC, datetime
from typing import Any

from google.api_core import exceptions as gcp_exceptions
from google.cloud import compute_v1

from runner_pool.context import Context
from runner_pool.drivers.base import DEFAULT_STATES, Driver, tags_match
from runner_pool.errors import (
    CloudUnreachable,
    OperationCancelled,
    ProvisionFailed,
    TagConflict,
)
from runner_pool.models import OS_WINDOWS, Instance, InstanceState, PoolSpec


logger = logging.getLogger(__name__)

OPERATION_TIMEOUT_SEC = 300
PROVISION_TIMEOUT_SEC = 15 * 60
DEAD_STATUSES = {"STOPPING", "STOPPED", "SUSPENDING", "SUSPENDED", "TERMINATED"}
STATUS_BY_STATE = {
    "pending": ("PROVISIONING", "STAGING"),
    "running": ("RUNNING",),
    "stopping": ("STOPPING",),
    "terminated": ("TERMINATED",),
}
_INVALID_LABEL_CHARS = re.compile(r"[^a-z0-9_-]")


def label(value: str) -> str:
    """Labels only accept lowercase letters, digits, dashes and underscores."""
    return _INVALID_LABEL_CHARS.sub("-", value.lower())[:63]


def _labels(tags: Mapping[str, str]) -> dict[str, str]:
    return {label(k): label(v) for k, v in tags.items()}


def _instance_name(pool: str) -> str:
    return f"drone-{label(pool)}"[:50].rstrip("-") + "-" + uuid.uuid4().hex[:8]


class GoogleDriver(Driver):
    """Compute Engine driver.

    Instances are addressed by name; the zones of the pool are searched in
    order when an operation only knows the name. Labels are the tag set, and
    ``set_labels`` with the current fingerprint makes conditional retagging
    atomic on the server side.
    """

    provider = "google"

    def __init__(
        self,
        *,
        project_id: str,
        zones: Iterable[str],
        json_path: str = "",
        poll_interval_sec: float = 60,
        provision_timeout_sec: float = PROVISION_TIMEOUT_SEC,
        instances_client: Any = None,
        zones_client: Any = None,
    ):
        self.project_id = project_id
        self.zones = tuple(zones)
        self.poll_interval_sec = poll_interval_sec
        self.provision_timeout_sec = provision_timeout_sec
        if instances_client is None:
            instances_client = (
                compute_v1.InstancesClient.from_service_account_file(json_path)
                if json_path
                else compute_v1.InstancesClient()
            )
        if zones_client is None:
            zones_client = (
                compute_v1.ZonesClient.from_service_account_file(json_path)
                if json_path
                else compute_v1.ZonesClient()
            )
        self._instances = instances_client
        self._zones = zones_client

    def _to_instance(self, raw: Any, private: bool = False) -> Instance:
        created_at = datetime.now(UTC)
        if raw.creation_timestamp:
            created_at = datetime.fromisoformat(raw.creation_timestamp).astimezone(UTC)
        return Instance(
            id=raw.name,
            ip=self._address(raw, private),
            state=InstanceState.CREATING,
            created_at=created_at,
            tags=dict(raw.labels),
        )

    @staticmethod
    def _address(raw: Any, private: bool) -> str:
        for interface in raw.network_interfaces:
            if private:
                if interface.network_i_p:
                    return interface.network_i_p
                continue
            for access in interface.access_configs:
                if access.nat_i_p:
                    return access.nat_i_p
        return ""

    def _resource(self, spec: PoolSpec, name: str, zone: str, tags: Mapping[str, str]) -> Any:
        shape = spec.shape
        disk = compute_v1.AttachedDisk(
            auto_delete=True,
            boot=True,
            initialize_params=compute_v1.AttachedDiskInitializeParams(
                source_image=shape.image,
                disk_size_gb=shape.disk.size,
                disk_type=f"zones/{zone}/diskTypes/{shape.disk.type}",
            ),
        )
        interface = compute_v1.NetworkInterface(
            network=shape.network.network or "global/networks/default",
        )
        if shape.network.subnetwork:
            interface.subnetwork = shape.network.subnetwork
        if not shape.network.private_ip:
            interface.access_configs = [
                compute_v1.AccessConfig(name="External NAT", type_="ONE_TO_ONE_NAT")
            ]

        metadata_key = (
            "windows-startup-script-ps1"
            if spec.platform.os == OS_WINDOWS
            else "user-data"
        )
        resource = compute_v1.Instance(
            name=name,
            machine_type=f"zones/{zone}/machineTypes/{shape.instance_type}",
            disks=[disk],
            network_interfaces=[interface],
            metadata=compute_v1.Metadata(
                items=[compute_v1.Items(key=metadata_key, value=spec.user_data)]
            ),
            labels=_labels(tags),
        )
        if shape.service_account.email:
            resource.service_accounts = [
                compute_v1.ServiceAccount(
                    email=shape.service_account.email,
                    scopes=list(shape.service_account.scopes)
                    or ["https://www.googleapis.com/auth/cloud-platform"],
                )
            ]
        return resource

    def provision(
        self, ctx: Context, spec: PoolSpec, tags: Mapping[str, str]
    ) -> Instance:
        ctx.check()
        if not self.zones:
            raise ProvisionFailed(
                pool=spec.name, provider=self.provider, stage="create", detail="no zone configured"
            )
        started = time.monotonic()
        zone = random.choice(self.zones)
        name = _instance_name(spec.name)
        try:
            operation = self._instances.insert(
                project=self.project_id,
                zone=zone,
                instance_resource=self._resource(spec, name, zone, tags),
            )
            operation.result(timeout=OPERATION_TIMEOUT_SEC)
        except gcp_exceptions.GoogleAPICallError as exc:
            logger.error("google: insert failed pool=%s zone=%s error=%s", spec.name, zone, exc)
            raise ProvisionFailed(
                pool=spec.name, provider=self.provider, stage="create", detail=str(exc)
            ) from exc
        logger.debug("google: created instance pool=%s name=%s zone=%s", spec.name, name, zone)

        try:
            instance = self._poll_address(
                ctx.child(self.provision_timeout_sec), spec, name, zone
            )
        except ProvisionFailed:
            self._delete_quietly(name, zone)
            raise
        except OperationCancelled as exc:
            logger.warning(
                "google: no address before deadline, deleting pool=%s name=%s error=%s",
                spec.name,
                name,
                exc,
            )
            self._delete_quietly(name, zone)
            raise ProvisionFailed(
                pool=spec.name,
                provider=self.provider,
                stage="wait_address",
                detail=f"failed to obtain IP address: {exc}",
                instance_id=name,
            ) from exc

        logger.info(
            "google: provisioned pool=%s id=%s ip=%s took=%.2fs",
            spec.name,
            instance.id,
            instance.ip,
            time.monotonic() - started,
        )
        return instance

    def _poll_address(self, ctx: Context, spec: PoolSpec, name: str, zone: str) -> Instance:
        private = spec.shape.network.private_ip
        interval = 0.0
        while True:
            if ctx.wait(interval):
                ctx.check()
            interval = self.poll_interval_sec
            try:
                raw = self._instances.get(project=self.project_id, zone=zone, instance=name)
            except gcp_exceptions.GoogleAPICallError as exc:
                logger.warning("google: instance details failed name=%s error=%s", name, exc)
                continue
            if raw.status in DEAD_STATUSES:
                logger.error(
                    "google: instance died before getting an address name=%s status=%s",
                    name,
                    raw.status,
                )
                raise ProvisionFailed(
                    pool=spec.name,
                    provider=self.provider,
                    stage="wait_address",
                    detail=f"instance entered status {raw.status}",
                    instance_id=name,
                )
            if self._address(raw, private):
                return self._to_instance(raw, private)
            logger.debug("google: instance has no address yet name=%s", name)

    def _delete_quietly(self, name: str, zone: str) -> None:
        try:
            self._instances.delete(project=self.project_id, zone=zone, instance=name)
        except gcp_exceptions.GoogleAPICallError as exc:
            logger.error(
                "google: failed to delete abandoned instance name=%s error=%s", name, exc
            )

    def _locate(self, name: str) -> tuple[Any, str] | None:
        for zone in self.zones:
            try:
                return self._instances.get(project=self.project_id, zone=zone, instance=name), zone
            except gcp_exceptions.NotFound:
                continue
        return None

    def destroy(self, ctx: Context, *instance_ids: str) -> None:
        for name in instance_ids:
            for zone in self.zones:
                try:
                    self._instances.delete(project=self.project_id, zone=zone, instance=name)
                    logger.debug("google: deleted name=%s zone=%s", name, zone)
                    break
                except gcp_exceptions.NotFound:
                    continue

    def tag(
        self,
        ctx: Context,
        instance_id: str,
        tags: Mapping[str, str],
        remove: Iterable[str] = (),
        expect: Mapping[str, str | None] | None = None,
    ) -> None:
        ctx.check()
        located = self._locate(instance_id)
        if located is None:
            raise TagConflict(instance_id=instance_id, expected=dict(expect or {}))
        raw, zone = located
        current = dict(raw.labels)
        if expect is not None:
            wanted = {label(k): (None if v is None else label(v)) for k, v in expect.items()}
            if not tags_match(current, wanted):
                raise TagConflict(instance_id=instance_id, expected=dict(expect))
        for key in remove:
            current.pop(label(key), None)
        current.update(_labels(tags))
        try:
            self._instances.set_labels(
                project=self.project_id,
                zone=zone,
                instance=instance_id,
                instances_set_labels_request_resource=compute_v1.InstancesSetLabelsRequest(
                    label_fingerprint=raw.label_fingerprint,
                    labels=current,
                ),
            )
        except gcp_exceptions.PreconditionFailed as exc:
            raise TagConflict(
                instance_id=instance_id, expected=dict(expect or {})
            ) from exc

    def stored_tags(self, tags: Mapping[str, str]) -> dict[str, str]:
        return _labels(tags)

    def get(self, ctx: Context, instance_id: str) -> Instance | None:
        located = self._locate(instance_id)
        if located is None:
            return None
        raw, _ = located
        if raw.status in {"STOPPING", "TERMINATED"}:
            return None
        return self._to_instance(raw)

    def ping(self, ctx: Context) -> None:
        if not self.zones:
            raise CloudUnreachable(provider=self.provider, detail="no zone configured")
        try:
            self._zones.get(project=self.project_id, zone=self.zones[0])
        except gcp_exceptions.GoogleAPICallError as exc:
            raise CloudUnreachable(provider=self.provider, detail=str(exc)) from exc

    def list(
        self,
        ctx: Context,
        tags: Mapping[str, str],
        states: Iterable[str] = DEFAULT_STATES,
    ) -> list[Instance]:
        ctx.check()
        statuses = [status for state in states for status in STATUS_BY_STATE.get(state, ())]
        clauses = [f'labels.{k} = "{v}"' for k, v in _labels(tags).items()]
        clauses.append("(" + " OR ".join(f'status = "{s}"' for s in statuses) + ")")
        query = " AND ".join(clauses)
        found: list[Instance] = []
        try:
            for zone in self.zones:
                request = compute_v1.ListInstancesRequest(
                    project=self.project_id, zone=zone, filter=query
                )
                found.extend(self._to_instance(raw) for raw in self._instances.list(request=request))
        except gcp_exceptions.GoogleAPICallError as exc:
            logger.error("google: failed to list instances error=%s", exc)
            raise CloudUnreachable(provider=self.provider, detail=str(exc)) from exc
        return found
