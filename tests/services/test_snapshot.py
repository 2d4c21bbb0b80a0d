from debupgrader.models import SystemPaths
from debupgrader.services.cleanup import CleanupRegistry
from debupgrader.services.snapshot import SnapshotService, diff_versions, parse_versions


class DummyLogger:
    def __init__(self):
        self.messages = []

    def _record(self, level, message, *args):
        self.messages.append((level, message % args if args else message))

    def debug(self, message, *args, **_kwargs):
        self._record("debug", message, *args)

    def info(self, message, *args, **_kwargs):
        self._record("info", message, *args)

    def warning(self, message, *args, **_kwargs):
        self._record("warning", message, *args)


class FakePackageManager:
    def __init__(self, versions="bash\t5.2.15-2\ncurl\t7.88.1-10\n"):
        self.versions = versions

    def selections(self):
        return "bash\tinstall\ncurl\tinstall\n"

    def manual_packages(self):
        return "curl\n"

    def package_versions(self):
        return self.versions


def build_service(tmp_path, package_manager=None, dry_run=False):
    apt_dir = tmp_path / "apt"
    (apt_dir / "sources.list.d").mkdir(parents=True)
    (apt_dir / "sources.list").write_text("deb http://deb.debian.org/debian bookworm main\n", encoding="utf-8")
    (apt_dir / "sources.list.d" / "extra.list").write_text("deb https://example.com bookworm main\n", encoding="utf-8")
    logger = DummyLogger()
    return SnapshotService(
        package_manager=package_manager or FakePackageManager(),
        registry=CleanupRegistry(logger),
        logger=logger,
        paths=SystemPaths(state_dir=str(tmp_path / "state"), apt_dir=str(apt_dir)),
        dry_run=dry_run,
    )


def test_capture_pre_writes_snapshots_and_source_copies(tmp_path):
    service = build_service(tmp_path)

    service.capture_pre()

    state_dir = tmp_path / "state"
    assert (state_dir / "selections-pre.txt").read_text(encoding="utf-8").startswith("bash")
    assert (state_dir / "manual-packages-pre.txt").read_text(encoding="utf-8") == "curl\n"
    assert "curl\t7.88.1-10" in (state_dir / "package-versions-pre.txt").read_text(encoding="utf-8")
    assert "bookworm" in (state_dir / "sources.list.pre").read_text(encoding="utf-8")
    assert (state_dir / "sources.list.d.pre" / "extra.list").exists()
    assert str(state_dir / "sources.list.d.pre" / "extra.list") in service.registry.created_files


def test_capture_pre_is_rolled_back_with_registry(tmp_path):
    service = build_service(tmp_path)

    service.capture_pre()
    service.registry.rollback()

    state_dir = tmp_path / "state"
    assert not (state_dir / "selections-pre.txt").exists()
    assert not (state_dir / "sources.list.d.pre" / "extra.list").exists()


def test_capture_in_dry_run_writes_nothing(tmp_path):
    service = build_service(tmp_path, dry_run=True)

    service.capture_pre()
    service.capture_post()

    assert not (tmp_path / "state").exists()


def test_diff_versions_counts_changes():
    before = parse_versions("bash\t5.2.15-2\ncurl\t7.88.1-10\npython3.11\t3.11.2-6\n")
    after = parse_versions("bash\t5.2.37-1\ncurl\t7.88.1-10\npython3.13\t3.13.5-1\n")

    diff = diff_versions(before, after)

    assert (diff.upgraded, diff.added, diff.removed) == (1, 1, 1)


def test_summarize_changes_reads_pre_and_post_snapshots(tmp_path):
    service = build_service(tmp_path)
    service.capture_pre()
    service.package_manager.versions = "bash\t5.2.37-1\ncurl\t8.14.1-2\nnew-pkg\t1.0\n"
    service.capture_post()

    diff = service.summarize_changes()

    assert (diff.upgraded, diff.added, diff.removed) == (2, 1, 0)
    assert ("info", "Package changes: 2 upgraded, 1 added, 0 removed") in service.logger.messages
