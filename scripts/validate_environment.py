#!/usr/bin/env python3
"""Validate local FitPool environment readiness."""

from __future__ import annotations

import importlib
import shutil
import sys
import tempfile
from dataclasses import replace
from datetime import datetime, timedelta, timezone
from pathlib import Path
from zoneinfo import ZoneInfo

PROJECT_ROOT = Path(__file__).resolve().parents[1]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

from fitpool.clients.base import MeetingDetails
from fitpool.domain.models import PoolSpec, Registrant
from fitpool.repository.data_repository import DataRepository, to_utc_iso
from fitpool.services.allocation_service import PoolAssignmentService, allocate
from fitpool.services.event_service import EventService
from fitpool.services.registration_service import RegistrationService
from fitpool.utils.config import get_settings

SEPARATOR_LINE = "=" * 44


class _LocalMeetingClient:
    """Offline meeting provisioning used only by the smoke check."""

    def create_meeting(self, title, start_time_iso, duration_minutes, participant_addresses, host_address):
        slug = title.lower().replace(" ", "-")
        return MeetingDetails(meeting_url=f"https://meet.invalid/{slug}")


def _print_result(name: str, success: bool, detail: str = "") -> tuple[bool, str]:
    if success:
        return True, f"[PASS] {name}{detail}"
    return False, f"[FAIL] {name}: {detail}"


def main() -> int:
    results: list[str] = []
    all_passed = True
    temp_dir = tempfile.mkdtemp(prefix="fitpool-env-")

    # CHECK 1: Python version >= 3.11
    if sys.version_info >= (3, 11):
        ok, line = _print_result("Python " + sys.version.split()[0], True)
    else:
        ok, line = _print_result(
            "Python version >= 3.11",
            False,
            f"found {sys.version.split()[0]}",
        )
    results.append(line)
    all_passed = all_passed and ok

    # CHECK 2: Required packages importable
    package_specs = [
        ("fastapi", "fastapi"),
        ("uvicorn", "uvicorn"),
        ("pydantic", "pydantic"),
        ("httpx", "httpx"),
        ("dotenv", "python-dotenv"),
        ("reportlab", "reportlab"),
        ("pytest", "pytest"),
    ]
    from importlib.metadata import PackageNotFoundError, version

    import_errors: list[str] = []
    for module_name, dist_name in package_specs:
        try:
            importlib.import_module(module_name)
            version(dist_name)
        except (ImportError, PackageNotFoundError) as exc:
            import_errors.append(f"{module_name} ({exc})")
    if import_errors:
        ok, line = _print_result(
            "Required packages",
            False,
            "missing/unimportable -> " + "; ".join(import_errors),
        )
    else:
        ok, line = _print_result("Required packages: all importable", True)
    results.append(line)
    all_passed = all_passed and ok

    try:
        base_settings = get_settings()

        # CHECK 3: Timezone database
        try:
            ZoneInfo(base_settings.timezone)
            ok, line = _print_result("Timezone", True, f": {base_settings.timezone}")
        except Exception as exc:
            ok, line = _print_result("Timezone", False, str(exc))
        results.append(line)
        all_passed = all_passed and ok

        # CHECK 4: Allocator arithmetic
        try:
            registrants = [
                Registrant(registrant_id=index, name=f"R{index}", mobile_number=f"90000000{index:02d}")
                for index in range(1, 24)
            ]
            outcome = allocate(
                registrants,
                [PoolSpec(name=name, capacity=10) for name in ("A", "B", "C")],
            )
            occupancy = [pool.occupancy for pool in outcome.pools]
            if occupancy != [8, 8, 7] or outcome.unplaced:
                raise RuntimeError(f"unexpected distribution {occupancy}")
            ok, line = _print_result("Allocator", True, f": {occupancy}")
        except Exception as exc:
            ok, line = _print_result("Allocator", False, str(exc))
        results.append(line)
        all_passed = all_passed and ok

        validation_settings = replace(
            base_settings,
            database_path=Path(temp_dir) / "fitpool_validation.db",
            whatsapp_access_token=None,
        )
        repository = DataRepository(validation_settings)

        # CHECK 5: Database initialization
        try:
            repository.initialize_database()
            ok, line = _print_result("Database initialization", True)
        except Exception as exc:
            ok, line = _print_result("Database initialization", False, str(exc))
        results.append(line)
        all_passed = all_passed and ok

        # CHECK 6: End-to-end pool assignment against the temporary database
        try:
            now = datetime.now(timezone.utc)
            events = EventService(repository=repository, settings=validation_settings)
            registration = RegistrationService(repository=repository, settings=validation_settings)
            facilitator = events.create_facilitator("Smoke Trainer", "9100000000")
            event = events.create_event(
                title="Smoke Session",
                event_date=(now + timedelta(days=3)).date().isoformat(),
                event_time="7:00 AM - 8:00 AM",
                category="yoga",
                facilitator_ids=[facilitator.facilitator_id],
                registration_deadline=to_utc_iso(now + timedelta(minutes=5)),
            )
            for index in range(3):
                registrant = registration.upsert_registrant(f"Smoke {index}", f"92000000{index:02d}")
                registration.register_free(event.event_id, registrant.mobile_number, now=now)
            result = PoolAssignmentService(
                repository=repository,
                meeting_client=_LocalMeetingClient(),
                settings=validation_settings,
            ).assign_event_pools(event.event_id, now=now + timedelta(minutes=10))
            ok, line = _print_result(
                "Pool assignment",
                True,
                f": {len(result.pools)} pool(s), {repository.count_pool_attendees(event.event_id)} attendees",
            )
        except Exception as exc:
            ok, line = _print_result("Pool assignment", False, str(exc))
        results.append(line)
        all_passed = all_passed and ok

    finally:
        shutil.rmtree(temp_dir, ignore_errors=True)

    print(SEPARATOR_LINE)
    print(" FitPool Environment Validation")
    print(SEPARATOR_LINE)
    for line in results:
        print(f" {line}")
    print(SEPARATOR_LINE)
    if all_passed:
        print(" All checks passed. Environment is ready.")
        print(SEPARATOR_LINE)
        return 0
    print(" One or more checks failed.")
    print(SEPARATOR_LINE)
    return 1


if __name__ == "__main__":
    raise SystemExit(main())
