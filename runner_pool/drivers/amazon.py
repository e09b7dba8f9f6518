import logging
import time
from collections.abc import Iterable, Mapping
from datetime import UTC, datetime
from typing import Any

import boto3
from botocore.config import Config as BotoConfig
from botocore.exceptions import BotoCoreError, ClientError

from runner_pool.context import Context
from runner_pool.drivers.base import DEFAULT_STATES, Driver, tags_match
from runner_pool.errors import (
    CloudUnreachable,
    OperationCancelled,
    ProvisionFailed,
    TagConflict,
)
from runner_pool.models import Instance, InstanceState, PoolSpec


logger = logging.getLogger(__name__)

MAX_RETRIES = 10
PROVISION_TIMEOUT_SEC = 15 * 60
DEAD_STATES = {"shutting-down", "terminated", "stopping", "stopped"}
NOT_FOUND_CODES = {"InvalidInstanceID.NotFound", "InvalidInstanceID.Malformed"}


def _error_code(exc: Exception) -> str:
    if isinstance(exc, ClientError):
        return exc.response.get("Error", {}).get("Code", "")
    return ""


class AmazonDriver(Driver):
    provider = "amazon"

    def __init__(
        self,
        *,
        region: str,
        access_key_id: str = "",
        access_key_secret: str = "",
        availability_zone: str = "",
        poll_interval_sec: float = 60,
        provision_timeout_sec: float = PROVISION_TIMEOUT_SEC,
        client: Any = None,
    ):
        self.region = region
        self.availability_zone = availability_zone
        self.poll_interval_sec = poll_interval_sec
        self.provision_timeout_sec = provision_timeout_sec
        if client is None:
            kwargs: dict[str, Any] = {
                "region_name": region,
                "config": BotoConfig(retries={"max_attempts": MAX_RETRIES}),
            }
            if access_key_id and access_key_secret:
                kwargs["aws_access_key_id"] = access_key_id
                kwargs["aws_secret_access_key"] = access_key_secret
            client = boto3.client("ec2", **kwargs)
        self._ec2 = client

    def _address(self, raw: dict, private: bool) -> str:
        if private:
            return raw.get("PrivateIpAddress", "") or ""
        return raw.get("PublicIpAddress", "") or ""

    def _to_instance(self, raw: dict, private: bool = False) -> Instance:
        tags = {t["Key"]: t["Value"] for t in raw.get("Tags", []) if "Key" in t}
        launch_time = raw.get("LaunchTime") or datetime.now(UTC)
        if launch_time.tzinfo is None:
            launch_time = launch_time.replace(tzinfo=UTC)
        ip = self._address(raw, private) or self._address(raw, not private)
        return Instance(
            id=raw["InstanceId"],
            ip=ip,
            state=InstanceState.CREATING,
            created_at=launch_time,
            tags=tags,
        )

    def _run_params(self, spec: PoolSpec, tags: Mapping[str, str]) -> dict[str, Any]:
        shape = spec.shape
        ebs: dict[str, Any] = {
            "VolumeSize": shape.disk.size,
            "VolumeType": shape.disk.type,
            "DeleteOnTermination": True,
            "Encrypted": True,
        }
        if shape.disk.type == "io1":
            ebs["Iops"] = shape.disk.iops
        network: dict[str, Any] = {
            "AssociatePublicIpAddress": not shape.network.private_ip,
            "DeviceIndex": 0,
        }
        if shape.network.subnet_id:
            network["SubnetId"] = shape.network.subnet_id
        if shape.network.security_groups:
            network["Groups"] = list(shape.network.security_groups)

        params: dict[str, Any] = {
            "ImageId": shape.image,
            "InstanceType": shape.instance_type,
            "MinCount": 1,
            "MaxCount": 1,
            # boto3 base64-encodes UserData for run_instances itself
            "UserData": spec.user_data,
            "NetworkInterfaces": [network],
            "TagSpecifications": [
                {
                    "ResourceType": "instance",
                    "Tags": [{"Key": k, "Value": v} for k, v in tags.items()],
                }
            ],
            "BlockDeviceMappings": [{"DeviceName": shape.device, "Ebs": ebs}],
        }
        if shape.iam_profile_arn:
            params["IamInstanceProfile"] = {"Arn": shape.iam_profile_arn}
        if shape.key_pair_name:
            params["KeyName"] = shape.key_pair_name
        zone = shape.zones[0] if shape.zones else self.availability_zone
        if zone and not shape.network.subnet_id:
            params["Placement"] = {"AvailabilityZone": zone}
        return params

    def provision(
        self, ctx: Context, spec: PoolSpec, tags: Mapping[str, str]
    ) -> Instance:
        ctx.check()
        started = time.monotonic()
        try:
            result = self._ec2.run_instances(**self._run_params(spec, tags))
        except (ClientError, BotoCoreError) as exc:
            logger.error("aws: run_instances failed pool=%s error=%s", spec.name, exc)
            raise ProvisionFailed(
                pool=spec.name, provider=self.provider, stage="create", detail=str(exc)
            ) from exc

        created = result.get("Instances", [])
        if not created:
            raise ProvisionFailed(
                pool=spec.name,
                provider=self.provider,
                stage="create",
                detail="run_instances returned no instance",
            )
        instance_id = created[0]["InstanceId"]
        logger.debug("aws: created instance pool=%s id=%s", spec.name, instance_id)

        try:
            instance = self._poll_address(
                ctx.child(self.provision_timeout_sec), spec, instance_id
            )
        except ProvisionFailed:
            self._terminate_quietly(instance_id)
            raise
        except OperationCancelled as exc:
            logger.warning(
                "aws: no address before deadline, terminating pool=%s id=%s error=%s",
                spec.name,
                instance_id,
                exc,
            )
            self._terminate_quietly(instance_id)
            raise ProvisionFailed(
                pool=spec.name,
                provider=self.provider,
                stage="wait_address",
                detail=f"failed to obtain IP address: {exc}",
                instance_id=instance_id,
            ) from exc

        logger.info(
            "aws: provisioned pool=%s id=%s ip=%s took=%.2fs",
            spec.name,
            instance.id,
            instance.ip,
            time.monotonic() - started,
        )
        return instance

    def _poll_address(self, ctx: Context, spec: PoolSpec, instance_id: str) -> Instance:
        private = spec.shape.network.private_ip
        interval = 0.0
        while True:
            if ctx.wait(interval):
                ctx.check()
            interval = self.poll_interval_sec
            try:
                response = self._ec2.describe_instances(InstanceIds=[instance_id])
            except (ClientError, BotoCoreError) as exc:
                logger.warning("aws: instance details failed id=%s error=%s", instance_id, exc)
                continue
            for reservation in response.get("Reservations", []):
                for raw in reservation.get("Instances", []):
                    state = raw.get("State", {}).get("Name", "")
                    if state in DEAD_STATES:
                        logger.error(
                            "aws: instance died before getting an address id=%s state=%s",
                            instance_id,
                            state,
                        )
                        raise ProvisionFailed(
                            pool=spec.name,
                            provider=self.provider,
                            stage="wait_address",
                            detail=f"instance entered state {state}",
                            instance_id=instance_id,
                        )
                    ip = self._address(raw, private)
                    if ip:
                        instance = self._to_instance(raw, private)
                        instance.ip = ip
                        return instance
            logger.debug("aws: instance has no address yet id=%s", instance_id)

    def _terminate_quietly(self, instance_id: str) -> None:
        try:
            self._ec2.terminate_instances(InstanceIds=[instance_id])
        except (ClientError, BotoCoreError) as exc:
            logger.error(
                "aws: failed to terminate abandoned instance id=%s error=%s",
                instance_id,
                exc,
            )

    def destroy(self, ctx: Context, *instance_ids: str) -> None:
        if not instance_ids:
            return
        try:
            self._ec2.terminate_instances(InstanceIds=list(instance_ids))
        except ClientError as exc:
            if _error_code(exc) in NOT_FOUND_CODES:
                if len(instance_ids) > 1:
                    # one unknown id fails the whole batch, retry one by one
                    for instance_id in instance_ids:
                        self.destroy(ctx, instance_id)
                return
            logger.error("aws: failed to terminate ids=%s error=%s", instance_ids, exc)
            raise
        logger.debug("aws: terminated ids=%s", instance_ids)

    def tag(
        self,
        ctx: Context,
        instance_id: str,
        tags: Mapping[str, str],
        remove: Iterable[str] = (),
        expect: Mapping[str, str | None] | None = None,
    ) -> None:
        ctx.check()
        if expect is not None:
            current = self.get(ctx, instance_id)
            if current is None or not tags_match(current.tags, expect):
                raise TagConflict(instance_id=instance_id, expected=dict(expect))
        # add before removing so the instance never looks unowned in between
        if tags:
            self._ec2.create_tags(
                Resources=[instance_id],
                Tags=[{"Key": k, "Value": v} for k, v in tags.items()],
            )
        keys = [key for key in remove if key not in tags]
        if keys:
            self._ec2.delete_tags(
                Resources=[instance_id], Tags=[{"Key": key} for key in keys]
            )

    def get(self, ctx: Context, instance_id: str) -> Instance | None:
        try:
            response = self._ec2.describe_instances(InstanceIds=[instance_id])
        except ClientError as exc:
            if _error_code(exc) in NOT_FOUND_CODES:
                return None
            raise
        for reservation in response.get("Reservations", []):
            for raw in reservation.get("Instances", []):
                if raw.get("State", {}).get("Name") in {"terminated", "shutting-down"}:
                    return None
                return self._to_instance(raw)
        return None

    def ping(self, ctx: Context) -> None:
        try:
            self._ec2.describe_regions(AllRegions=True)
        except (ClientError, BotoCoreError) as exc:
            raise CloudUnreachable(provider=self.provider, detail=str(exc)) from exc

    def list(
        self,
        ctx: Context,
        tags: Mapping[str, str],
        states: Iterable[str] = DEFAULT_STATES,
    ) -> list[Instance]:
        ctx.check()
        filters = [{"Name": "instance-state-name", "Values": list(states)}]
        filters.extend({"Name": f"tag:{k}", "Values": [v]} for k, v in tags.items())
        found: list[Instance] = []
        try:
            paginator = self._ec2.get_paginator("describe_instances")
            for page in paginator.paginate(Filters=filters):
                for reservation in page.get("Reservations", []):
                    found.extend(
                        self._to_instance(raw) for raw in reservation.get("Instances", [])
                    )
        except (ClientError, BotoCoreError) as exc:
            logger.error("aws: failed to list instances error=%s", exc)
            raise CloudUnreachable(provider=self.provider, detail=str(exc)) from exc
        return found
