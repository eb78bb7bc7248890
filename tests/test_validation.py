import pytest

from cranlike.domain.builder import parse_builder_fields
from cranlike.domain.errors import ValidationError
from cranlike.domain.manifest import parse_built
from cranlike.domain.models import ArtifactType, PackageRecord
from cranlike.domain.validation import check_artifact_type, validate_record

from conftest import LINUX_BUILT, MAC_BUILT, WASM_BUILT, WIN_BUILT, builder_fields


def make_record(type, built=None, fields=None, package="mypkg", version="1.0") -> PackageRecord:
    return PackageRecord(
        id="r1",
        user="jane",
        package=package,
        version=version,
        type=type,
        nocasepkg=package.lower(),
        built=parse_built(built) if built else None,
        builder=parse_builder_fields(builder_fields() if fields is None else fields),
    )


def test_check_artifact_type_rejects_failure_and_unknown():
    assert check_artifact_type("mac") is ArtifactType.MAC
    for value in ("failure", "solaris", ""):
        with pytest.raises(ValidationError):
            check_artifact_type(value)


@pytest.mark.parametrize(
    "type,built,fields",
    [
        (ArtifactType.SRC, None, builder_fields()),
        (ArtifactType.WIN, WIN_BUILT, builder_fields()),
        (ArtifactType.MAC, MAC_BUILT, builder_fields()),
        (ArtifactType.LINUX, LINUX_BUILT, builder_fields(distro="noble")),
        (ArtifactType.WASM, WASM_BUILT, builder_fields()),
    ],
)
def test_valid_records_pass(type, built, fields):
    validate_record(make_record(type, built, fields), "mypkg", "1.0")


def test_name_or_version_mismatch():
    with pytest.raises(ValidationError, match="does not match"):
        validate_record(make_record(ArtifactType.SRC), "mypkg", "2.0")
    with pytest.raises(ValidationError, match="does not match"):
        validate_record(make_record(ArtifactType.SRC, package="other"), "mypkg", "1.0")


def test_source_with_built_field_is_rejected():
    with pytest.raises(ValidationError, match="Built"):
        validate_record(make_record(ArtifactType.SRC, built=LINUX_BUILT), "mypkg", "1.0")


@pytest.mark.parametrize(
    "jobs,message",
    [
        ([], "no build jobs"),
        ([{"config": "source"}], "missing"),
        ([{"config": "linux-release", "check": "OK"}], "source"),
    ],
)
def test_source_job_rules(jobs, message):
    record = make_record(ArtifactType.SRC, fields=builder_fields(jobs=jobs))
    with pytest.raises(ValidationError, match=message):
        validate_record(record, "mypkg", "1.0")


def test_binary_without_built_is_rejected():
    with pytest.raises(ValidationError, match="Built"):
        validate_record(make_record(ArtifactType.MAC), "mypkg", "1.0")


def test_windows_requires_windows_ostype():
    with pytest.raises(ValidationError, match="OStype"):
        validate_record(make_record(ArtifactType.WIN, built=MAC_BUILT), "mypkg", "1.0")


def test_mac_requires_unix_and_apple_platform():
    with pytest.raises(ValidationError, match="OStype"):
        validate_record(make_record(ArtifactType.MAC, built=WIN_BUILT), "mypkg", "1.0")
    with pytest.raises(ValidationError, match="Platform"):
        validate_record(make_record(ArtifactType.MAC, built=LINUX_BUILT), "mypkg", "1.0")


def test_mac_without_compiled_code_has_no_platform_to_check():
    built = "R 4.3.1; ; 2023-10-01 12:00:00 UTC; unix"
    validate_record(make_record(ArtifactType.MAC, built=built), "mypkg", "1.0")


def test_linux_platform_and_distro_rules():
    riscv = "R 4.3.1; riscv64-pc-linux-gnu; 2023-10-01 12:00:00 UTC; unix"
    with pytest.raises(ValidationError, match="Platform"):
        validate_record(make_record(ArtifactType.LINUX, riscv, builder_fields(distro="noble")), "mypkg", "1.0")
    with pytest.raises(ValidationError, match="distro"):
        validate_record(make_record(ArtifactType.LINUX, LINUX_BUILT, builder_fields()), "mypkg", "1.0")


def test_wasm_platform_is_rewritten():
    record = validate_record(make_record(ArtifactType.WASM, WASM_BUILT), "mypkg", "1.0")
    assert record.built["Platform"] == "emscripten"


@pytest.mark.parametrize(
    "drop,message",
    [
        ("Builder-Status", "status"),
        ("Builder-Commit", "commit"),
        ("Builder-Maintainer", "maintainer"),
    ],
)
def test_builder_metadata_is_required(drop, message):
    fields = builder_fields()
    del fields[drop]
    with pytest.raises(ValidationError, match=message):
        validate_record(make_record(ArtifactType.SRC, fields=fields), "mypkg", "1.0")


def test_empty_status_counts_as_present():
    record = make_record(ArtifactType.SRC, fields=builder_fields(status=""))
    assert validate_record(record, "mypkg", "1.0").builder.status == ""
