import argparse
import asyncio
import sys

from rollcall.attendance_queue import OfflineAttendanceQueue
from rollcall.attendance_service import AttendanceApiClient, AttendanceService
from rollcall.camera_capture import OpenCVVideoSource
from rollcall.config import CAMERA_INDEX, DB_PATH, DEVICE, ENROLLMENT_SAMPLES, MATCH_THRESHOLD, QUEUE_DB_PATH
from rollcall.database import DescriptorStore
from rollcall.engine import EngineSettings, FaceRecognitionEngine
from rollcall.exceptions import AttendanceError
from rollcall.face_engine import FaceEngine
from rollcall.face_types import UserType
from rollcall.logger import setup_logger
from rollcall.surface import StreamSurface, SurfaceSlot

USER_TYPES = [kind.value for kind in UserType]


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Face recognition attendance terminal")

    subparsers = parser.add_subparsers(dest="command", required=True)

    enroll = subparsers.add_parser("enroll", help="Capture face samples for a student or employee")
    enroll.add_argument("--id", required=True, dest="user_id", help="Student or employee ID")
    enroll.add_argument("--type", choices=USER_TYPES, default=UserType.STUDENT.value, dest="user_type")
    enroll.add_argument("--samples", type=int, default=ENROLLMENT_SAMPLES, help="Number of face samples")
    enroll.add_argument("--camera", type=int, default=CAMERA_INDEX, help="Webcam index")

    recognize = subparsers.add_parser("recognize", help="Recognise faces and record attendance")
    recognize.add_argument("--camera", type=int, default=CAMERA_INDEX, help="Webcam index")
    recognize.add_argument(
        "--threshold",
        type=float,
        default=MATCH_THRESHOLD,
        help="Maximum Euclidean descriptor distance for a match",
    )
    recognize.add_argument("--once", action="store_true", help="Stop after the first recognised face")
    recognize.add_argument(
        "--no-record",
        action="store_true",
        help="Only print matches, do not send attendance to the backend",
    )

    remove = subparsers.add_parser("remove", help="Delete every enrolled sample of a user")
    remove.add_argument("--id", required=True, dest="user_id", help="Student or employee ID")
    remove.add_argument("--type", choices=USER_TYPES, required=True, dest="user_type")

    subparsers.add_parser("list", help="List enrolled users")

    return parser


def build_engine(camera_index: int = CAMERA_INDEX, threshold: float = MATCH_THRESHOLD) -> FaceRecognitionEngine:
    return FaceRecognitionEngine(
        provider=FaceEngine(device=DEVICE),
        store=DescriptorStore(DB_PATH),
        video_source=OpenCVVideoSource(preferred_index=camera_index),
        surface_provider=SurfaceSlot(StreamSurface("terminal")),
        settings=EngineSettings(match_threshold=threshold),
    )


async def run_enroll(args: argparse.Namespace) -> int:
    async with build_engine(camera_index=args.camera) as engine:
        if not engine.initialized:
            print(f"Error: {engine.error}")
            return 1
        if not await engine.start_camera():
            print(f"Error: {engine.error}")
            return 1

        print("Look at the camera...")
        result = await engine.enroll(
            args.user_id,
            args.user_type,
            sample_count=args.samples,
            on_progress=lambda progress: print(f"  progress {progress}%"),
        )
        if not result.success:
            print(f"Enrollment failed: {result.error}")
            return 1

        print(
            f"Enrolled {args.user_type} {args.user_id} "
            f"({result.samples_captured}/{args.samples} samples, {result.descriptors_stored} descriptors)."
        )
        return 0


async def run_recognize(args: argparse.Namespace) -> int:
    attendance = None
    if not args.no_record:
        attendance = AttendanceService(AttendanceApiClient(), queue=OfflineAttendanceQueue(QUEUE_DB_PATH))

    async with build_engine(camera_index=args.camera, threshold=args.threshold) as engine:
        if not engine.initialized:
            print(f"Error: {engine.error}")
            return 1
        if not await engine.start_camera():
            print(f"Error: {engine.error}")
            return 1

        done = asyncio.Event()

        async def on_result(user_id: str, user_type: UserType, confidence: float) -> None:
            print(f"Recognised {user_type.value} {user_id} (confidence {confidence:.2f})")
            if attendance is not None:
                try:
                    await asyncio.to_thread(attendance.mark_now, user_id, user_type, confidence)
                except AttendanceError as exc:
                    print(f"Attendance not recorded: {exc}")
            if args.once:
                done.set()

        cancel = engine.start_recognition(on_result)
        print("Recognition running. Press Ctrl+C to stop.")
        try:
            await done.wait()
        finally:
            cancel()
        return 0


async def run_remove(args: argparse.Namespace) -> int:
    store = DescriptorStore(DB_PATH)
    try:
        removed = await asyncio.to_thread(store.remove_all_for_user, args.user_id, args.user_type)
    finally:
        store.close()
    print(f"Removed {removed} descriptors for {args.user_type} {args.user_id}.")
    return 0


def run_list() -> int:
    store = DescriptorStore(DB_PATH)
    try:
        users = store.list_enrolled_users()
    finally:
        store.close()

    if not users:
        print("No users enrolled.")
        return 0

    print(f"{'Type':<10} {'User ID':<16} {'Samples'}")
    print("-" * 40)
    for user in users:
        print(f"{user.user_type.value:<10} {user.user_id:<16} {user.samples}")
    return 0


def main() -> int:
    parser = build_parser()
    args = parser.parse_args()
    logger = setup_logger("main")

    try:
        if args.command == "enroll":
            return asyncio.run(run_enroll(args))
        if args.command == "recognize":
            return asyncio.run(run_recognize(args))
        if args.command == "remove":
            return asyncio.run(run_remove(args))
        if args.command == "list":
            return run_list()

    except AttendanceError as exc:
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
