"""AWS provider: images are imported EBS snapshots, instances run on EC2."""

import base64
import math
import time
from datetime import datetime
from pathlib import Path

import boto3
from boto3.exceptions import S3UploadFailedError
from botocore.exceptions import BotoCoreError, ClientError, NoCredentialsError
from rich.console import Console
from rich.progress import BarColumn, Progress, TextColumn, TimeElapsedColumn

from .config import (
    Config,
    ProviderConfig,
    get_aws_config,
    zone_to_region,
)
from .convergence import AZ_RE, NetworkConverger, aws_call, error_code
from .errors import (
    CredentialsError,
    ImageNotFoundError,
    InstanceNotFoundError,
    NotFoundError,
    OpsError,
    PartialCreateError,
    SetupError,
    VolumeNotFoundError,
    WaitTimeoutError,
)
from .images import ExternalImageBuilder, ImageBuilder, parse_size
from .tags import build_tags, created_by_filter, tag_specifications, tag_value
from .types import CloudImage, CloudInstance, LaunchTemplateInput, NanosVolume
from .utils import log, warn
from .waiter import Waiter, progress_probe, state_probe

DEFAULT_FLAVOR = "t2.micro"
ROOT_DEVICE = "/dev/sda1"
ACTIVE_STATES = ["running", "pending", "shutting-down", "stopping", "stopped"]

SNAPSHOT_DELAY = 15
SNAPSHOT_ATTEMPTS = 120
TERMINATE_DELAY = 15
TERMINATE_ATTEMPTS = 120
STATIC_IP_DELAY = 2
STATIC_IP_ATTEMPTS = 60

EC2_ARCH = {"": "x86_64", "amd64": "x86_64", "x86_64": "x86_64", "arm64": "arm64", "aarch64": "arm64"}


def check_aws_auth(session: boto3.Session) -> dict:
    """Validate credentials with STS, fail fast with an actionable error.

    :return: The caller identity
    :raises CredentialsError: If credentials are missing, expired, or invalid
    """
    try:
        return session.client("sts").get_caller_identity()
    except NoCredentialsError as e:
        raise CredentialsError(
            "AWS credentials not configured. Please run:\n"
            "  aws configure\n"
            "Or set environment variables:\n"
            "  export AWS_PROFILE=your-profile\n"
            "  export AWS_REGION=us-east-1"
        ) from e
    except ClientError as e:
        code = error_code(e)
        if code in ("ExpiredToken", "ExpiredTokenException"):
            profile = session.profile_name
            login_cmd = f"aws sso login --profile {profile}" if profile else "aws sso login"
            raise CredentialsError(f"AWS credentials expired. Run:\n  {login_cmd}") from e
        raise CredentialsError(f"AWS authentication failed ({code}): {e}") from e
    except BotoCoreError as e:
        raise CredentialsError(f"AWS authentication failed: {e}") from e


def attach_device_name(attach_id: int, used: set[str]) -> str:
    """Pick the device name for a volume attachment.

    An explicit attach id 1-25 maps to ``/dev/sd<b..z>``; otherwise the first
    unused ``/dev/sdb``..``/dev/sdz`` is chosen.
    """
    if 1 <= attach_id <= 25:
        return f"/dev/sd{chr(ord('a') + attach_id)}"
    for letter in "bcdefghijklmnopqrstuvwxyz":
        device = f"/dev/sd{letter}"
        if device not in used:
            return device
    raise OpsError("no free device names left on instance")


def _iso(value) -> str:
    return value.isoformat() if isinstance(value, datetime) else str(value or "")


def to_cloud_instance(instance: dict) -> CloudInstance:
    interfaces = instance.get("NetworkInterfaces", [])
    return {
        "id": instance["InstanceId"],
        "name": tag_value(instance, "Name", instance["InstanceId"]),
        "status": instance.get("State", {}).get("Name", ""),
        "created": _iso(instance.get("LaunchTime")),
        "private_ips": [n["PrivateIpAddress"] for n in interfaces if n.get("PrivateIpAddress")],
        "public_ips": [
            n["Association"]["PublicIp"]
            for n in interfaces
            if n.get("Association", {}).get("PublicIp")
        ],
        "image": tag_value(instance, "image"),
    }


def to_volume(volume: dict) -> NanosVolume:
    name = tag_value(volume, "Name")
    return {
        "id": volume["VolumeId"],
        "name": name,
        "label": name,
        "size": volume.get("Size", 0),
        "path": "",
        "created_at": _iso(volume.get("CreateTime")),
        "attached_to": ";".join(a["InstanceId"] for a in volume.get("Attachments", [])),
        "status": volume.get("State", ""),
    }


class AWSProvider:
    provider_name = "aws"

    def __init__(self, builder: ImageBuilder | None = None, sleep=time.sleep):
        self.builder = builder or ExternalImageBuilder()
        self.cloud = ProviderConfig(platform="aws")
        self.sleep = sleep
        self.session = None
        self.ec2 = None
        self.s3 = None
        self.autoscaling = None

    def initialize(self, cloud: ProviderConfig) -> None:
        """Open a session and verify credentials before any other call."""
        self.cloud = cloud
        aws_config = get_aws_config(cloud.profile, zone_to_region(cloud.zone) or None)
        self.session = boto3.Session(**aws_config)
        identity = check_aws_auth(self.session)
        try:
            self.ec2 = self.session.client("ec2")
            self.s3 = self.session.client("s3")
            self.autoscaling = self.session.client("autoscaling")
        except BotoCoreError as e:
            raise SetupError(f"AWS client setup failed (is a region set?): {e}") from e
        log(
            f"AWS: region={self.session.region_name}  "
            f"account={identity.get('Account', 'unknown')}"
        )

    def _waiter(self, delay: float, attempts: int) -> Waiter:
        return Waiter(delay=delay, max_attempts=attempts, sleep=self.sleep)

    # Images

    def build_image(self, config: Config) -> Path:
        return self.builder.build_image(config)

    def build_image_with_package(self, config: Config, pkg_path: Path) -> Path:
        return self.builder.build_image_from_package(pkg_path, config)

    def create_image(self, config: Config, image_path: Path) -> None:
        """Upload a raw image, import it as a snapshot and register an AMI."""
        bucket = self.cloud.bucket_name
        if not bucket:
            raise OpsError("an S3 bucket name is required to create AWS images")
        key = config.run.image_name or self.cloud.image_name or Path(image_path).stem

        log(f"Uploading '{image_path}' to 's3://{bucket}/{key}'...")
        try:
            self.s3.upload_file(str(image_path), bucket, key)
        except (ClientError, BotoCoreError, S3UploadFailedError) as e:
            raise OpsError(f"upload image '{key}' to bucket '{bucket}': {e}") from e

        snapshot_id = self.import_snapshot(bucket, key)
        aws_call(self.s3, "delete_object", f"delete 's3://{bucket}/{key}'", Bucket=bucket, Key=key)

        tags, _ = build_tags(self.cloud.tags, key)
        aws_call(self.ec2, "create_tags", f"tag snapshot '{snapshot_id}'",
                 Resources=[snapshot_id], Tags=tags)

        image_id = aws_call(
            self.ec2,
            "register_image",
            f"register image '{key}'",
            Name=f"{key}-{time.time_ns()}",
            Architecture=EC2_ARCH.get(config.run.arch, "x86_64"),
            BlockDeviceMappings=[
                {
                    "DeviceName": ROOT_DEVICE,
                    "Ebs": {
                        "DeleteOnTermination": False,
                        "SnapshotId": snapshot_id,
                        "VolumeType": "gp2",
                    },
                }
            ],
            Description=f"unikops image {key}",
            RootDeviceName=ROOT_DEVICE,
            VirtualizationType="hvm",
            EnaSupport=True,
        )["ImageId"]
        aws_call(self.ec2, "create_tags", f"tag image '{image_id}'",
                 Resources=[image_id], Tags=tags)
        log(f"Created image: '{key}' ({image_id})")

    def import_snapshot(self, bucket: str, key: str) -> str:
        """Import s3://bucket/key as an EBS snapshot and wait for it.

        :return: Snapshot id
        """
        task_id = aws_call(
            self.ec2,
            "import_snapshot",
            f"import snapshot from '{key}'",
            Description=f"snapshot for {key}",
            DiskContainer={
                "Description": key,
                "Format": "raw",
                "UserBucket": {"S3Bucket": bucket, "S3Key": key},
            },
        )["ImportTaskId"]

        def fetch() -> dict:
            tasks = aws_call(
                self.ec2,
                "describe_import_snapshot_tasks",
                f"describe import task '{task_id}'",
                ImportTaskIds=[task_id],
            )["ImportSnapshotTasks"]
            return tasks[0].get("SnapshotTaskDetail", {}) if tasks else {}

        probe = progress_probe(
            fetch,
            state_of=lambda d: d.get("Status", ""),
            progress_of=lambda d: float(d["Progress"]) if d.get("Progress") else None,
            success={"completed"},
            failure={"deleted", "deleting"},
        )

        start = time.monotonic()
        progress = Progress(
            TextColumn("{task.description}"),
            BarColumn(),
            TextColumn("{task.percentage:>3.0f}%"),
            TimeElapsedColumn(),
            console=Console(stderr=True),
            transient=True,
        )
        with progress:
            bar = progress.add_task(f"Importing '{key}'", total=100)
            try:
                detail = self._waiter(SNAPSHOT_DELAY, SNAPSHOT_ATTEMPTS).wait(
                    probe,
                    f"import snapshot '{key}'",
                    on_progress=lambda pct: progress.update(bar, completed=pct),
                )
            except WaitTimeoutError as e:
                warn(f"import timed out after {e.elapsed / 60:.1f} minutes")
                raise
        log(f"import done - took {(time.monotonic() - start) / 60:.1f} minutes")
        return detail["SnapshotId"]

    def _describe_images(self) -> list[dict]:
        return aws_call(
            self.ec2, "describe_images", "list images",
            Owners=["self"], Filters=[created_by_filter()],
        )["Images"]

    def get_images(self, config: Config) -> list[CloudImage]:
        images = []
        for image in self._describe_images():
            mappings = image.get("BlockDeviceMappings", [])
            size_gib = mappings[0].get("Ebs", {}).get("VolumeSize", 0) if mappings else 0
            images.append(
                {
                    "id": image["ImageId"],
                    "name": tag_value(image, "Name", image.get("Name", "")),
                    "status": image.get("State", ""),
                    "size": size_gib * 1024**3,
                    "created": image.get("CreationDate", ""),
                }
            )
        return images

    def find_image(self, name: str) -> dict:
        """:raises ImageNotFoundError: If no image carries this Name tag"""
        for image in self._describe_images():
            if tag_value(image, "Name") == name or image["ImageId"] == name:
                return image
        raise ImageNotFoundError(name)

    def delete_image(self, config: Config, name: str) -> None:
        image = self.find_image(name)
        aws_call(self.ec2, "deregister_image", f"deregister image '{name}'",
                 ImageId=image["ImageId"])
        for mapping in image.get("BlockDeviceMappings", []):
            snapshot_id = mapping.get("Ebs", {}).get("SnapshotId")
            if snapshot_id:
                aws_call(self.ec2, "delete_snapshot", f"delete snapshot '{snapshot_id}'",
                         SnapshotId=snapshot_id)
        log(f"Deleted image: '{name}'")

    def resize_image(self, config: Config, name: str, size: str) -> None:
        raise OpsError("resizing registered images is not supported on aws")

    # Instances

    def create_instance(self, config: Config) -> str:
        """Converge the network and launch one instance from a tagged AMI.

        :return: EC2 instance id
        """
        run = config.run
        image_name = run.image_name or self.cloud.image_name
        image = self.find_image(image_name)
        instance_name = run.instance_name or image_name

        tags, name = build_tags(self.cloud.tags, instance_name)
        converger = NetworkConverger(self.ec2, self.cloud)
        network = converger.converge(name, run.ports, run.udp_ports)

        tags.append({"Key": "image", "Value": image_name})

        nic = {
            "DeleteOnTermination": True,
            "DeviceIndex": 0,
            "Groups": [network.security_group_id],
            "SubnetId": network.subnet_id,
            "AssociatePublicIpAddress": True,
        }
        if run.ip_address:
            nic["PrivateIpAddress"] = run.ip_address
        if run.ipv6_address:
            nic["Ipv6Addresses"] = [{"Ipv6Address": run.ipv6_address}]
        elif self.cloud.enable_ipv6:
            nic["Ipv6AddressCount"] = 1

        flavor = self.cloud.flavor or DEFAULT_FLAVOR
        params = {
            "ImageId": image["ImageId"],
            "InstanceType": flavor,
            "MinCount": 1,
            "MaxCount": 1,
            "NetworkInterfaces": [nic],
            "TagSpecifications": tag_specifications("instance", tags)
            + tag_specifications("volume", tags),
        }
        if self.cloud.instance_profile:
            params["IamInstanceProfile"] = {"Name": self.cloud.instance_profile}
        if self.cloud.user_data:
            params["UserData"] = self.cloud.user_data

        log(f"Creating EC2 instance '{name}' ({flavor})...")
        try:
            instance_id = self.ec2.run_instances(**params)["Instances"][0]["InstanceId"]
        except ClientError as e:
            raise PartialCreateError(f"run instance '{name}': {e}", converger.created) from e
        log(f"Created instance '{name}' ({instance_id})")

        if run.instance_group:
            self.update_instance_group(
                {
                    "auto_scaling_group": run.instance_group,
                    "image_id": image["ImageId"],
                    "instance_profile_name": self.cloud.instance_profile,
                    "instance_type": flavor,
                    "launch_template_name": f"{name}-{time.time_ns()}",
                    "tags": tags,
                    "network_interface": nic,
                }
            )
        if self.cloud.static_ip:
            self.associate_static_ip(instance_id, self.cloud.static_ip)
        return instance_id

    def update_instance_group(self, lt: LaunchTemplateInput) -> None:
        """Point an autoscaling group at a new launch template for this image."""
        data = {
            "ImageId": lt["image_id"],
            "InstanceType": lt["instance_type"],
            "NetworkInterfaces": [lt["network_interface"]],
            "TagSpecifications": tag_specifications("instance", lt["tags"]),
        }
        if lt.get("instance_profile_name"):
            data["IamInstanceProfile"] = {"Name": lt["instance_profile_name"]}

        template = aws_call(
            self.ec2, "create_launch_template",
            f"create launch template '{lt['launch_template_name']}'",
            LaunchTemplateName=lt["launch_template_name"],
            LaunchTemplateData=data,
        )["LaunchTemplate"]
        aws_call(
            self.ec2, "modify_launch_template",
            f"set default version of '{lt['launch_template_name']}'",
            LaunchTemplateId=template["LaunchTemplateId"],
            DefaultVersion=str(template["LatestVersionNumber"]),
        )
        aws_call(
            self.autoscaling, "update_auto_scaling_group",
            f"update instance group '{lt['auto_scaling_group']}'",
            AutoScalingGroupName=lt["auto_scaling_group"],
            LaunchTemplate={
                "LaunchTemplateId": template["LaunchTemplateId"],
                "Version": "$Default",
            },
        )
        log(f"Updated instance group '{lt['auto_scaling_group']}'")

    def _instance_state(self, instance_id: str) -> str | None:
        try:
            reservations = self.ec2.describe_instances(InstanceIds=[instance_id])["Reservations"]
        except ClientError as e:
            if error_code(e) == "InvalidInstanceID.NotFound":
                return None
            raise OpsError(f"describe instance '{instance_id}': {e}") from e
        for reservation in reservations:
            for instance in reservation["Instances"]:
                return instance["State"]["Name"]
        return None

    def associate_static_ip(self, instance_id: str, ip: str) -> None:
        self._waiter(STATIC_IP_DELAY, STATIC_IP_ATTEMPTS).wait(
            state_probe(
                lambda: self._instance_state(instance_id),
                success={"running", "stopped", "stopping"},
                failure={"shutting-down", "terminated"},
            ),
            f"instance '{instance_id}' to leave pending",
        )
        addresses = aws_call(self.ec2, "describe_addresses", f"find elastic ip '{ip}'",
                             PublicIps=[ip])["Addresses"]
        if not addresses:
            raise NotFoundError(f"elastic ip '{ip}' not found")
        aws_call(
            self.ec2, "associate_address", f"associate '{ip}' with '{instance_id}'",
            AllocationId=addresses[0]["AllocationId"], InstanceId=instance_id,
        )
        log(f"Associated static IP '{ip}' with '{instance_id}'")

    def _describe_instances(self, *filters: dict) -> list[dict]:
        reservations = aws_call(
            self.ec2, "describe_instances", "list instances",
            Filters=[created_by_filter(), *filters],
        )["Reservations"]
        return [i for r in reservations for i in r["Instances"]]

    def find_instance(self, name: str) -> dict:
        """:raises InstanceNotFoundError: If no live instance has this Name tag"""
        instances = self._describe_instances(
            {"Name": "tag:Name", "Values": [name]},
            {"Name": "instance-state-name", "Values": ACTIVE_STATES},
        )
        if not instances:
            raise InstanceNotFoundError(name)
        return instances[0]

    def get_instances(self, config: Config) -> list[CloudInstance]:
        return [to_cloud_instance(i) for i in self._describe_instances()]

    def get_instance_by_name(self, config: Config, name: str) -> CloudInstance:
        return to_cloud_instance(self.find_instance(name))

    def delete_instance(self, config: Config, name: str) -> None:
        """Terminate an instance, then delete the security group made for it.

        The group can only go once the instance is terminated, so this waits.
        """
        instance_id = self.find_instance(name)["InstanceId"]
        converger = NetworkConverger(self.ec2, self.cloud)
        group = converger.find_instance_security_group(name)

        aws_call(self.ec2, "terminate_instances", f"terminate instance '{name}'",
                 InstanceIds=[instance_id])
        log(f"Terminating instance '{name}' ({instance_id})")

        if group:
            log("Waiting for instance to terminate...")
            self._waiter(TERMINATE_DELAY, TERMINATE_ATTEMPTS).wait(
                state_probe(lambda: self._instance_state(instance_id), success={"terminated"}),
                f"terminate instance '{name}'",
            )
            converger.delete_security_group(group["GroupId"])

    def start_instance(self, config: Config, name: str) -> None:
        instance_id = self.find_instance(name)["InstanceId"]
        aws_call(self.ec2, "start_instances", f"start instance '{name}'",
                 InstanceIds=[instance_id])
        log(f"Started instance '{name}'")

    def stop_instance(self, config: Config, name: str) -> None:
        instance_id = self.find_instance(name)["InstanceId"]
        aws_call(self.ec2, "stop_instances", f"stop instance '{name}'",
                 InstanceIds=[instance_id])
        log(f"Stopped instance '{name}'")

    def get_instance_logs(self, config: Config, name: str) -> str:
        instance_id = self.find_instance(name)["InstanceId"]
        output = aws_call(self.ec2, "get_console_output", f"console output of '{name}'",
                          InstanceId=instance_id).get("Output", "")
        return base64.b64decode(output).decode(errors="replace") if output else ""

    # Volumes

    def create_volume(self, config: Config, name: str, size: str) -> NanosVolume:
        zone = self.cloud.zone
        if not AZ_RE.match(zone):
            raise OpsError(f"an availability zone is required to create volumes, got '{zone}'")
        size_gib = max(1, math.ceil(parse_size(size) / 1024**3))
        tags, _ = build_tags(self.cloud.tags, name)
        volume = aws_call(
            self.ec2, "create_volume", f"create volume '{name}'",
            AvailabilityZone=zone,
            Size=size_gib,
            VolumeType="gp2",
            TagSpecifications=tag_specifications("volume", tags),
        )
        log(f"Created volume: '{name}' ({volume['VolumeId']}, {size_gib}GiB)")
        return to_volume(volume)

    def get_all_volumes(self, config: Config) -> list[NanosVolume]:
        return self._volumes()

    def _volumes(self) -> list[NanosVolume]:
        volumes = aws_call(self.ec2, "describe_volumes", "list volumes",
                           Filters=[created_by_filter()])["Volumes"]
        return [to_volume(v) for v in volumes]

    def find_volume(self, name: str) -> NanosVolume:
        for volume in self._volumes():
            if name in (volume["id"], volume["name"]):
                return volume
        raise VolumeNotFoundError(name)

    def delete_volume(self, config: Config, name: str) -> None:
        volume = self.find_volume(name)
        aws_call(self.ec2, "delete_volume", f"delete volume '{name}'", VolumeId=volume["id"])
        log(f"Deleted volume: '{name}'")

    def attach_volume(self, config: Config, instance: str, volume: str) -> None:
        ec2_instance = self.find_instance(instance)
        vol = self.find_volume(volume)
        used = {m["DeviceName"] for m in ec2_instance.get("BlockDeviceMappings", [])}
        device = attach_device_name(config.run.attach_id, used)
        aws_call(
            self.ec2, "attach_volume", f"attach volume '{volume}' to '{instance}'",
            Device=device, InstanceId=ec2_instance["InstanceId"], VolumeId=vol["id"],
        )
        log(f"Attached volume '{volume}' to '{instance}' as {device}")

    def detach_volume(self, config: Config, instance: str, volume: str) -> None:
        ec2_instance = self.find_instance(instance)
        vol = self.find_volume(volume)
        aws_call(
            self.ec2, "detach_volume", f"detach volume '{volume}' from '{instance}'",
            InstanceId=ec2_instance["InstanceId"], VolumeId=vol["id"],
        )
        log(f"Detached volume '{volume}' from '{instance}'")
