import argparse
import asyncio
import sys
from datetime import date
from pathlib import Path

from attendance_monitor.api_client import EXPORT_FORMATS, BackendClient
from attendance_monitor.auth import build_token_provider
from attendance_monitor.capture import OpenCvCaptureProvider
from attendance_monitor.config import get_settings
from attendance_monitor.exceptions import MonitorError
from attendance_monitor.log_sync import derive_status
from attendance_monitor.logger import setup_logger
from attendance_monitor.models import LogEntry, SlotId
from attendance_monitor.session import MonitorSession
from attendance_monitor.slots import CameraSlotRegistry


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Live attendance session monitor")

    subparsers = parser.add_subparsers(dest="command", required=True)

    monitor = subparsers.add_parser("monitor", help="Follow today's attendance log and camera overlays")
    monitor.add_argument("--subject", type=int, default=None, help="Subject ID (defaults to the first subject)")
    monitor.add_argument("--seconds", type=int, default=0, help="Stop after N seconds (0 = until Ctrl+C)")

    subparsers.add_parser("cameras", help="Show the camera mapping and readable backend devices")

    set_camera = subparsers.add_parser("set-camera", help="Bind a camera slot to a backend source")
    set_camera.add_argument("--slot", choices=[slot.value for slot in SlotId], required=True)
    set_camera.add_argument("--source", required=True, help="Source key reported by the backend")

    capture = subparsers.add_parser("capture", help="Borrow a slot's camera and save one photo")
    capture.add_argument("--slot", choices=[slot.value for slot in SlotId], default=SlotId.ENTRANCE.value)
    capture.add_argument("--camera", type=int, default=None, help="Local webcam index override")
    capture.add_argument("--output", type=Path, default=Path("."), help="Directory for the JPEG file")

    export = subparsers.add_parser("export", help="Download the attendance export for one day")
    export.add_argument("--format", choices=EXPORT_FORMATS, default="csv")
    export.add_argument("--date", type=date.fromisoformat, default=None, help="YYYY-MM-DD (default today)")
    export.add_argument("--subject", type=int, default=None, help="Subject ID")
    export.add_argument("--output", type=Path, default=Path("."), help="Directory for the export file")

    logs = subparsers.add_parser("logs", help="Print one page of the attendance log")
    logs.add_argument("--date", type=date.fromisoformat, default=None, help="YYYY-MM-DD (default today)")
    logs.add_argument("--subject", type=int, default=None, help="Subject ID")
    logs.add_argument("--page", type=int, default=1, help="Page number")

    return parser


def _format_entry(entry: LogEntry) -> str:
    return (
        f"{entry.timestamp:%Y-%m-%d %H:%M:%S}  {entry.external_code:<12} "
        f"{entry.person_label:<24} {derive_status(entry).value}"
    )


async def _run_monitor(session: MonitorSession, subject_id: int | None, seconds: int) -> None:
    await session.start()
    if subject_id is not None:
        await session.select_subject(subject_id)

    seen = {entry.id for entry in session.logs.entries}
    for entry in reversed(session.logs.entries):
        print(_format_entry(entry))

    loop = asyncio.get_running_loop()
    deadline = loop.time() + seconds if seconds > 0 else None
    last_count = None
    try:
        while deadline is None or loop.time() < deadline:
            await asyncio.sleep(1.0)
            for entry in reversed(session.logs.entries):
                if entry.id not in seen:
                    seen.add(entry.id)
                    print(_format_entry(entry))
            count = session.student_count
            if count != last_count:
                print(f"[count] checked-in {count.checked}/{count.total}")
                last_count = count
    finally:
        await session.close()


async def _show_cameras(registry: CameraSlotRegistry) -> None:
    if await registry.load():
        for slot in registry.slots.values():
            print(f"{slot.slot_id.value:<10} source={slot.source_key or '-'}")
    else:
        print("Camera mapping not available yet.")
    for device in await registry.discover():
        print(f"Camera (src: {device.src}) - {device.width}x{device.height}")


async def _set_camera(registry: CameraSlotRegistry, slot: str, source: str) -> None:
    if not await registry.load():
        raise MonitorError("Camera mapping not available yet.")
    await registry.reconfigure(slot, source)
    print(f"{slot} -> {source}")


async def _capture(session: MonitorSession, slot: str, output: Path) -> Path:
    async with session.photo_capture(slot) as workflow:
        if workflow.error_message:
            raise MonitorError(workflow.error_message)
        photo = await workflow.take_photo()
        if photo is None:
            raise MonitorError(workflow.error_message or "No photo captured.")
    output.mkdir(parents=True, exist_ok=True)
    path = output / photo.filename
    path.write_bytes(photo.content)
    return path


async def _print_logs(session: MonitorSession, day: date, subject_id: int | None, page: int) -> None:
    await session.logs.bootstrap(day, subject_id)
    if not session.logs.set_page(page) and page != 1:
        raise MonitorError(f"Page {page} out of range (1-{session.logs.total_pages}).")
    for entry in session.logs.current_page_entries:
        print(_format_entry(entry))
    print(f"Page {session.logs.page}/{max(1, session.logs.total_pages)}  {session.logs.page_numbers()}")


def main() -> int:
    parser = build_parser()
    args = parser.parse_args()
    logger = setup_logger("attendance_monitor")
    settings = get_settings()

    if args.command == "capture" and args.camera is not None:
        settings = settings.model_copy(update={"capture_camera_index": args.camera})

    token_provider = build_token_provider(settings)
    client = BackendClient(settings, token_provider)
    capture_provider = OpenCvCaptureProvider(
        camera_index=settings.capture_camera_index,
        width=settings.capture_width,
        height=settings.capture_height,
    )
    session = MonitorSession(settings, client, capture_provider=capture_provider)

    try:
        if args.command == "monitor":
            asyncio.run(_run_monitor(session, args.subject, args.seconds))
            print("Monitor stopped.")
            return 0

        if args.command == "cameras":
            asyncio.run(_show_cameras(session.slots))
            return 0

        if args.command == "set-camera":
            asyncio.run(_set_camera(session.slots, args.slot, args.source))
            return 0

        if args.command == "capture":
            path = asyncio.run(_capture(session, args.slot, args.output))
            print(f"Saved {path}")
            return 0

        if args.command == "export":
            day = args.date or date.today()
            filename, content = asyncio.run(client.download_export(day, args.subject, args.format))
            args.output.mkdir(parents=True, exist_ok=True)
            path = args.output / filename
            path.write_bytes(content)
            print(f"Saved {path}")
            return 0

        if args.command == "logs":
            asyncio.run(_print_logs(session, args.date or date.today(), args.subject, args.page))
            return 0

    except MonitorError as exc:
        logger.error("Application error: %s", exc)
        print(f"Error: {exc}")
        return 1
    except KeyboardInterrupt:
        print("\nStopped by user.")
        return 1
    except Exception as exc:
        logger.exception("Unexpected failure")
        print(f"Unexpected error: {exc}")
        return 1

    parser.print_help()
    return 1


if __name__ == "__main__":
    sys.exit(main())
