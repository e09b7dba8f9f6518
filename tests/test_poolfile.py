import textwrap

import pytest

from runner_pool.errors import ConfigInvalid
from runner_pool.poolfile import load_pool_file, parse_pool_file


def test_defaults_applied(settings):
    specs = parse_pool_file("name: ubuntu\ninstance:\n  ami: ami-123\n", settings)
    assert len(specs) == 1
    spec = specs[0]
    assert spec.provider == "amazon"
    assert (spec.min_size, spec.max_size) == (0, 100)
    assert spec.account.region == "us-east-1"
    assert (spec.platform.os, spec.platform.arch) == ("linux", "amd64")
    assert spec.shape.image == "ami-123"
    assert spec.shape.instance_type == "t3.nano"
    assert (spec.shape.disk.size, spec.shape.disk.type) == (32, "gp2")
    assert spec.shape.device == "/dev/sda1"
    assert spec.shape.user == "root"
    assert spec.tags == {}
    assert spec.user_data.startswith("#cloud-config")
    assert "lite-engine-linux-amd64" in spec.user_data


def test_platform_specific_defaults(settings):
    text = textwrap.dedent(
        """\
        name: arm
        platform: {arch: arm64}
        instance:
          disk: {type: io1}
        ---
        name: win
        platform: {os: windows}
        """
    )
    arm, win = parse_pool_file(text, settings)
    assert arm.shape.instance_type == "a1.medium"
    assert arm.shape.disk.iops == 100
    assert win.shape.user == "Administrator"
    assert win.user_data.startswith("<powershell>")


def test_min_clamped_to_max_and_region_from_settings(settings):
    settings.aws_region = "eu-west-1"
    spec = parse_pool_file("name: p\nmin_pool_size: 9\nmax_pool_size: 3\n", settings)[0]
    assert (spec.min_size, spec.max_size) == (3, 3)
    assert spec.account.region == "eu-west-1"


def test_unknown_fields_ignored(settings):
    spec = parse_pool_file(
        "name: p\nsomething_new: 1\ninstance:\n  hibernate: true\n  tags: {team: ci}\n",
        settings,
    )[0]
    assert spec.tags == {"team": "ci"}


def test_network_and_account_fields(settings):
    text = textwrap.dedent(
        """\
        name: vpc
        account: {region: us-east-2, availability_zone: us-east-2a}
        instance:
          type: m5.large
          network:
            subnet_id: subnet-1
            security_groups: [sg-1, sg-2]
            private_ip: true
        """
    )
    spec = parse_pool_file(text, settings)[0]
    assert spec.account.region == "us-east-2"
    assert spec.shape.zones == ("us-east-2a",)
    assert spec.shape.network.subnet_id == "subnet-1"
    assert spec.shape.network.security_groups == ("sg-1", "sg-2")
    assert spec.shape.network.private_ip
    assert spec.shape.instance_type == "m5.large"


def test_duplicate_names_rejected(settings):
    with pytest.raises(ConfigInvalid):
        parse_pool_file("name: p\n---\nname: p\n", settings)


@pytest.mark.parametrize(
    "text",
    [
        "min_pool_size: 1\n",
        "name: p\ntype: azure\n",
        "name: p\nplatform: {os: plan9}\n",
        "name: p\nplatform: {arch: mips}\n",
        "name: p\ntype: google\ninstance: {zone: [us-central1-a]}\n",
        "name: p\nmin_pool_size: many\n",
        "- just\n- a list\n",
        "name: [unterminated\n",
    ],
)
def test_invalid_definitions_rejected(settings, text):
    with pytest.raises(ConfigInvalid):
        parse_pool_file(text, settings)


def test_google_defaults(settings):
    text = textwrap.dedent(
        """\
        name: gce
        type: google
        account: {project_id: my-project}
        instance:
          image: projects/ubuntu-os-cloud/global/images/ubuntu-2204
          zone: [us-central1-a, us-central1-b]
        """
    )
    spec = parse_pool_file(text, settings)[0]
    assert spec.provider == "google"
    assert spec.shape.instance_type == "e2-small"
    assert spec.shape.disk.type == "pd-standard"
    assert spec.shape.zones == ("us-central1-a", "us-central1-b")


def test_init_script_rendered_relative_to_catalog(settings, tmp_path):
    (tmp_path / "init.sh").write_text("#!/bin/sh\necho {{ platform }} {{ arch }}\n")
    catalog = tmp_path / "pool.yml"
    catalog.write_text("name: custom\ninit_script: init.sh\n")
    spec = load_pool_file(str(catalog), settings)[0]
    assert spec.user_data == "#!/bin/sh\necho linux amd64"
    assert spec.user_data_b64


def test_init_script_errors_are_config_errors(settings, tmp_path):
    with pytest.raises(ConfigInvalid):
        parse_pool_file("name: p\ninit_script: missing.sh\n", settings, base_dir=tmp_path)
    (tmp_path / "bad.sh").write_text("echo {{ not_defined }}\n")
    with pytest.raises(ConfigInvalid):
        parse_pool_file("name: p\ninit_script: bad.sh\n", settings, base_dir=tmp_path)


def test_missing_catalog_file(settings, tmp_path):
    with pytest.raises(ConfigInvalid):
        load_pool_file(str(tmp_path / "absent.yml"), settings)


def test_certificates_embedded_in_bootstrap(settings, tmp_path):
    for name in ("ca-cert.pem", "server-cert.pem", "server-key.pem"):
        (tmp_path / name).write_text(f"{name}-content")
    settings.certificate_folder = str(tmp_path)
    spec = parse_pool_file("name: p\n", settings)[0]
    assert "write_files:" in spec.user_data
    assert "/tmp/certs/server-key.pem" in spec.user_data
