import base64
import io
import tempfile
import zipfile

import pytest
from conftest import ScriptedGateway, snapshot, zip_payload
from metadata_job_client.errors import (
    ExtractionError,
    PayloadUnavailableError,
    SubmissionError,
)
from metadata_job_client.jobs import DeployJob, Job
from metadata_job_client.models import ConcurrencyMode, StatusPollingConfig


@pytest.fixture
def config() -> StatusPollingConfig:
    return StatusPollingConfig(concurrency=ConcurrencyMode.synchronous)


@pytest.mark.parametrize("mode", list(ConcurrencyMode))
@pytest.mark.asyncio
async def test_extract_before_start_is_deferred(config, sleep, tmp_path, mode):
    config.concurrency = mode
    files = {
        "src/package.xml": b"<Package/>",
        "src/classes/Foo.cls": b"public class Foo {}",
    }
    gateway = ScriptedGateway(
        [snapshot("InProgress"), snapshot("Succeeded", zip_payload(files))]
    )
    job = Job(gateway, "retrieve", config=config, sleep=sleep)
    extracted = []

    original = job._extract_archive

    def counting_extract(archive, destination):
        extracted.append(destination)
        original(archive, destination)

    job._extract_archive = counting_extract

    await job.extract_to(tmp_path)
    assert extracted == []

    await job.start()
    await job.wait()

    assert extracted == [tmp_path]
    assert (tmp_path / "src" / "package.xml").read_bytes() == b"<Package/>"
    foo = tmp_path / "src" / "classes" / "Foo.cls"
    assert foo.read_bytes() == b"public class Foo {}"


@pytest.mark.asyncio
async def test_deferred_extraction_skipped_on_failure(config, sleep, tmp_path):
    job = Job(
        ScriptedGateway([snapshot("Failed")]), "retrieve", config=config, sleep=sleep
    )
    errors = []
    job.on_error(errors.append)

    await job.extract_to(tmp_path / "out")
    await job.start()

    assert errors == [job]
    assert not (tmp_path / "out").exists()


@pytest.mark.asyncio
async def test_extract_overwrites_existing_files(config, sleep, tmp_path):
    (tmp_path / "a.txt").write_text("stale")
    job = Job(
        ScriptedGateway([snapshot("Succeeded", zip_payload({"a.txt": b"fresh"}))]),
        "retrieve",
        config=config,
        sleep=sleep,
    )
    await job.start()
    await job.extract_to(tmp_path)

    assert (tmp_path / "a.txt").read_text() == "fresh"


@pytest.mark.asyncio
async def test_extract_removes_temporary_archive(config, sleep, tmp_path, monkeypatch):
    (tmp_path / "tmp").mkdir()
    monkeypatch.setattr(tempfile, "tempdir", str(tmp_path / "tmp"))
    job = Job(
        ScriptedGateway([snapshot("Succeeded", zip_payload({"a.txt": b"x"}))]),
        "retrieve",
        config=config,
        sleep=sleep,
    )
    await job.start()
    await job.extract_to(tmp_path / "out")

    assert list((tmp_path / "tmp").iterdir()) == []


@pytest.mark.asyncio
async def test_entries_escaping_destination_are_rejected(config, sleep, tmp_path):
    job = Job(
        ScriptedGateway([snapshot("Succeeded", zip_payload({"../evil.txt": b"x"}))]),
        "retrieve",
        config=config,
        sleep=sleep,
    )
    await job.start()

    with pytest.raises(ExtractionError, match="escapes"):
        await job.extract_to(tmp_path / "out")
    assert not (tmp_path / "evil.txt").exists()


@pytest.mark.asyncio
async def test_corrupt_archive_raises_extraction_error(config, sleep, tmp_path):
    payload = base64.b64encode(b"definitely not a zip").decode("ascii")
    job = Job(
        ScriptedGateway([snapshot("Succeeded", payload)]),
        "retrieve",
        config=config,
        sleep=sleep,
    )
    await job.start()

    with pytest.raises(ExtractionError):
        await job.extract_to(tmp_path)


@pytest.mark.asyncio
async def test_deploy_job_zips_directory(config, sleep, tmp_path):
    source = tmp_path / "src"
    (source / "classes").mkdir(parents=True)
    (source / "package.xml").write_bytes(b"<Package/>")
    (source / "classes" / "Foo.cls").write_bytes(b"public class Foo {}")
    detail = {"success": True, "numberComponentsDeployed": 2}
    gateway = ScriptedGateway([snapshot("Succeeded", detail)])

    job = DeployJob(gateway, source, {"checkOnly": True}, config=config, sleep=sleep)
    await job.start()

    operation, params = gateway.submissions[0]
    assert operation == "deploy"
    assert params["deploy_options"] == {"checkOnly": True}
    with zipfile.ZipFile(io.BytesIO(base64.b64decode(params["zip_file"]))) as zf:
        assert sorted(zf.namelist()) == ["src/classes/Foo.cls", "src/package.xml"]
    assert await job.details() == detail

    with pytest.raises(PayloadUnavailableError, match="not an archive"):
        await job.archive_bytes()


@pytest.mark.asyncio
async def test_deploy_job_accepts_zip_file(config, sleep, tmp_path):
    archive = tmp_path / "deploy.zip"
    archive.write_bytes(base64.b64decode(zip_payload({"package.xml": b"<Package/>"})))
    gateway = ScriptedGateway([snapshot("Failed")])

    job = DeployJob(gateway, archive, config=config, sleep=sleep)
    await job.start()

    _, params = gateway.submissions[0]
    assert base64.b64decode(params["zip_file"]) == archive.read_bytes()
    with pytest.raises(PayloadUnavailableError):
        await job.details()


@pytest.mark.asyncio
async def test_deploy_packages_path_at_start(config, sleep, tmp_path):
    source = tmp_path / "src"
    gateway = ScriptedGateway([snapshot("Succeeded", {"success": True})])

    job = DeployJob(gateway, source, config=config, sleep=sleep)
    source.mkdir()
    (source / "package.xml").write_bytes(b"<Package/>")
    await job.start()

    _, params = gateway.submissions[0]
    with zipfile.ZipFile(io.BytesIO(base64.b64decode(params["zip_file"]))) as zf:
        assert zf.namelist() == ["src/package.xml"]


@pytest.mark.asyncio
async def test_deploy_missing_path_is_a_submission_error(config, sleep, tmp_path):
    gateway = ScriptedGateway([snapshot("Succeeded")])
    job = DeployJob(gateway, tmp_path / "missing", config=config, sleep=sleep)

    with pytest.raises(SubmissionError, match="Cannot package"):
        await job.start()
    assert not job.is_started()
    assert gateway.submissions == []
