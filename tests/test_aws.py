from datetime import datetime, timezone
from unittest.mock import MagicMock

import pytest
from botocore.exceptions import ClientError, NoCredentialsError

from unikops import aws as aws_module
from unikops.aws import AWSProvider, attach_device_name, check_aws_auth, to_cloud_instance
from unikops.config import ProviderConfig
from unikops.convergence import NetworkConverger, NetworkIds, sg_description
from unikops.errors import (
    CredentialsError,
    ImageNotFoundError,
    InstanceNotFoundError,
    OpsError,
    PartialCreateError,
)


def client_error(code):
    return ClientError({"Error": {"Code": code, "Message": code}}, "Operation")


@pytest.fixture
def sleeps():
    return []


@pytest.fixture
def provider(sleeps):
    p = AWSProvider(builder=MagicMock(), sleep=sleeps.append)
    p.cloud = ProviderConfig(platform="aws", zone="us-east-1a", bucket_name="images")
    p.ec2 = MagicMock()
    p.s3 = MagicMock()
    p.autoscaling = MagicMock()
    return p


def ec2_instance(instance_id="i-1", name="web", state="running"):
    return {
        "InstanceId": instance_id,
        "State": {"Name": state},
        "LaunchTime": datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc),
        "Tags": [{"Key": "Name", "Value": name}, {"Key": "image", "Value": "hello"}],
        "NetworkInterfaces": [
            {"PrivateIpAddress": "10.0.0.5", "Association": {"PublicIp": "3.3.3.3"}}
        ],
    }


class TestAttachDeviceName:
    def test_explicit_id(self):
        assert attach_device_name(1, set()) == "/dev/sdb"
        assert attach_device_name(25, set()) == "/dev/sdz"

    def test_first_free(self):
        assert attach_device_name(0, {"/dev/sda1", "/dev/sdb"}) == "/dev/sdc"

    def test_none_free(self):
        used = {f"/dev/sd{c}" for c in "bcdefghijklmnopqrstuvwxyz"}
        with pytest.raises(OpsError):
            attach_device_name(0, used)


class TestAuth:
    def test_no_credentials(self):
        session = MagicMock()
        session.client.return_value.get_caller_identity.side_effect = NoCredentialsError()
        with pytest.raises(CredentialsError, match="aws configure"):
            check_aws_auth(session)

    def test_expired(self):
        session = MagicMock(profile_name="dev")
        session.client.return_value.get_caller_identity.side_effect = client_error("ExpiredToken")
        with pytest.raises(CredentialsError, match="aws sso login --profile dev"):
            check_aws_auth(session)


def test_to_cloud_instance():
    assert to_cloud_instance(ec2_instance()) == {
        "id": "i-1",
        "name": "web",
        "status": "running",
        "created": "2024-05-01T12:00:00+00:00",
        "private_ips": ["10.0.0.5"],
        "public_ips": ["3.3.3.3"],
        "image": "hello",
    }


class TestImages:
    def test_create_image(self, provider, config, tmp_path):
        image_path = tmp_path / "hello.img"
        image_path.write_bytes(b"\0")
        config.run.image_name = "hello"
        provider.ec2.import_snapshot.return_value = {"ImportTaskId": "import-snap-1"}
        provider.ec2.describe_import_snapshot_tasks.side_effect = [
            {"ImportSnapshotTasks": [{"SnapshotTaskDetail": {"Status": "active", "Progress": "40"}}]},
            {"ImportSnapshotTasks": [
                {"SnapshotTaskDetail": {"Status": "completed", "SnapshotId": "snap-1"}}
            ]},
        ]
        provider.ec2.register_image.return_value = {"ImageId": "ami-1"}

        provider.create_image(config, image_path)

        provider.s3.upload_file.assert_called_once_with(str(image_path), "images", "hello")
        provider.s3.delete_object.assert_called_once_with(Bucket="images", Key="hello")
        mapping = provider.ec2.register_image.call_args.kwargs["BlockDeviceMappings"][0]
        assert mapping["Ebs"]["SnapshotId"] == "snap-1"
        tagged = [c.kwargs["Resources"] for c in provider.ec2.create_tags.call_args_list]
        assert tagged == [["snap-1"], ["ami-1"]]

    def test_create_image_needs_bucket(self, provider, config, tmp_path):
        provider.cloud.bucket_name = ""
        with pytest.raises(OpsError, match="S3 bucket"):
            provider.create_image(config, tmp_path / "hello.img")

    def test_failed_import(self, provider, config, tmp_path, sleeps):
        config.run.image_name = "hello"
        provider.ec2.import_snapshot.return_value = {"ImportTaskId": "import-snap-1"}
        provider.ec2.describe_import_snapshot_tasks.return_value = {
            "ImportSnapshotTasks": [{"SnapshotTaskDetail": {"Status": "deleted"}}]
        }

        with pytest.raises(OpsError, match="deleted"):
            provider.create_image(config, tmp_path / "hello.img")
        provider.ec2.register_image.assert_not_called()
        assert sleeps == []

    def test_find_image(self, provider):
        provider.ec2.describe_images.return_value = {
            "Images": [{"ImageId": "ami-1", "Tags": [{"Key": "Name", "Value": "hello"}]}]
        }
        assert provider.find_image("hello")["ImageId"] == "ami-1"
        with pytest.raises(ImageNotFoundError):
            provider.find_image("other")


class FakeConverger:
    created = ["vpc vpc-new"]

    def __init__(self, ec2, cloud):
        pass

    def converge(self, instance_name, tcp_ports=None, udp_ports=None):
        return NetworkIds("vpc-new", "subnet-1", "sg-1")


class TestInstances:
    @pytest.fixture(autouse=True)
    def ami(self, provider, monkeypatch):
        provider.ec2.describe_images.return_value = {
            "Images": [{"ImageId": "ami-1", "Tags": [{"Key": "Name", "Value": "hello"}]}]
        }
        monkeypatch.setattr(aws_module, "NetworkConverger", FakeConverger)

    def test_create_instance(self, provider, config):
        config.run.image_name = "hello"
        config.run.instance_name = "web"
        provider.ec2.run_instances.return_value = {"Instances": [{"InstanceId": "i-1"}]}

        assert provider.create_instance(config) == "i-1"

        params = provider.ec2.run_instances.call_args.kwargs
        assert params["ImageId"] == "ami-1"
        assert params["InstanceType"] == "t2.micro"
        nic = params["NetworkInterfaces"][0]
        assert nic["Groups"] == ["sg-1"]
        assert nic["SubnetId"] == "subnet-1"
        tags = params["TagSpecifications"][0]["Tags"]
        assert {"Key": "Name", "Value": "web"} in tags
        assert {"Key": "CreatedBy", "Value": "ops"} in tags
        assert {"Key": "image", "Value": "hello"} in tags

    def test_run_failure_reports_leftovers(self, provider, config):
        config.run.image_name = "hello"
        provider.ec2.run_instances.side_effect = client_error("InsufficientInstanceCapacity")

        with pytest.raises(PartialCreateError) as exc:
            provider.create_instance(config)
        assert exc.value.created == ["vpc vpc-new"]

    def test_name_tag_names_security_group(self, provider, config, monkeypatch):
        converged = []

        class RecordingConverger(FakeConverger):
            def converge(self, instance_name, tcp_ports=None, udp_ports=None):
                converged.append(instance_name)
                return super().converge(instance_name, tcp_ports, udp_ports)

        monkeypatch.setattr(aws_module, "NetworkConverger", RecordingConverger)
        provider.cloud.tags = [{"Key": "Name", "Value": "frontend"}]
        config.run.image_name = "hello"
        provider.ec2.run_instances.return_value = {"Instances": [{"InstanceId": "i-1"}]}

        provider.create_instance(config)

        tags = provider.ec2.run_instances.call_args.kwargs["TagSpecifications"][0]["Tags"]
        assert [t["Value"] for t in tags if t["Key"] == "Name"] == ["frontend"]
        assert converged == ["frontend"]

        monkeypatch.setattr(aws_module, "NetworkConverger", NetworkConverger)
        provider.ec2.describe_instances.side_effect = lambda **kwargs: {
            "Reservations": [{"Instances": [ec2_instance(name="frontend", state="terminated")]}]
        }

        def describe_security_groups(Filters=(), **kwargs):
            descriptions = [f["Values"][0] for f in Filters if f["Name"] == "description"]
            if descriptions == [sg_description(converged[0])]:
                return {"SecurityGroups": [{"GroupId": "sg-1"}]}
            return {"SecurityGroups": []}

        provider.ec2.describe_security_groups.side_effect = describe_security_groups

        provider.delete_instance(config, "frontend")

        provider.ec2.delete_security_group.assert_called_once_with(GroupId="sg-1")


    def test_get_instances(self, provider, config):
        provider.ec2.describe_instances.return_value = {
            "Reservations": [{"Instances": [ec2_instance("i-1", "a"), ec2_instance("i-2", "b")]}]
        }

        instances = provider.get_instances(config)

        assert [i["name"] for i in instances] == ["a", "b"]
        filters = provider.ec2.describe_instances.call_args.kwargs["Filters"]
        assert {"Name": "tag:CreatedBy", "Values": ["ops"]} in filters

    def test_instance_not_found(self, provider, config):
        provider.ec2.describe_instances.return_value = {"Reservations": []}
        with pytest.raises(InstanceNotFoundError):
            provider.delete_instance(config, "ghost")


class TestDeleteInstance:
    def states(self, provider, *states):
        remaining = list(states)

        def describe_instances(**kwargs):
            if "InstanceIds" in kwargs:
                return {"Reservations": [{"Instances": [ec2_instance(state=remaining.pop(0))]}]}
            return {"Reservations": [{"Instances": [ec2_instance()]}]}

        provider.ec2.describe_instances.side_effect = describe_instances

    def test_waits_before_deleting_group(self, provider, config, sleeps):
        self.states(provider, "shutting-down", "shutting-down", "terminated")
        provider.ec2.describe_security_groups.return_value = {
            "SecurityGroups": [{"GroupId": "sg-1"}]
        }

        provider.delete_instance(config, "web")

        provider.ec2.terminate_instances.assert_called_once_with(InstanceIds=["i-1"])
        provider.ec2.delete_security_group.assert_called_once_with(GroupId="sg-1")
        assert sleeps == [15, 15]
        names = [c[0] for c in provider.ec2.mock_calls]
        assert names.index("terminate_instances") < names.index("delete_security_group")

    def test_no_group_no_wait(self, provider, config, sleeps):
        self.states(provider)
        provider.ec2.describe_security_groups.return_value = {"SecurityGroups": []}

        provider.delete_instance(config, "web")

        provider.ec2.terminate_instances.assert_called_once()
        provider.ec2.delete_security_group.assert_not_called()
        assert sleeps == []


class TestVolumes:
    def test_create_volume_needs_zone(self, provider, config):
        provider.cloud.zone = "us-east-1"
        with pytest.raises(OpsError, match="availability zone"):
            provider.create_volume(config, "data", "10g")

    def test_create_volume(self, provider, config):
        provider.ec2.create_volume.return_value = {"VolumeId": "vol-1", "Size": 1, "State": "creating"}

        volume = provider.create_volume(config, "data", "100m")

        assert volume["id"] == "vol-1"
        kwargs = provider.ec2.create_volume.call_args.kwargs
        assert kwargs["Size"] == 1
        assert kwargs["AvailabilityZone"] == "us-east-1a"

    def test_attach_picks_free_device(self, provider, config):
        instance = ec2_instance()
        instance["BlockDeviceMappings"] = [{"DeviceName": "/dev/sda1"}, {"DeviceName": "/dev/sdb"}]
        provider.ec2.describe_instances.return_value = {"Reservations": [{"Instances": [instance]}]}
        provider.ec2.describe_volumes.return_value = {
            "Volumes": [{"VolumeId": "vol-1", "Tags": [{"Key": "Name", "Value": "data"}]}]
        }

        provider.attach_volume(config, "web", "data")

        provider.ec2.attach_volume.assert_called_once_with(
            Device="/dev/sdc", InstanceId="i-1", VolumeId="vol-1"
        )
