"""
Road Recorder Sensor Runner - Replay a raw IMU capture through the pipeline
Writes sensors.csv, annotations.log and clock_warnings.log to a session directory.

Usage:
    # Replay a capture at its recorded pace:
    python sensor_runner.py --replay capture.csv --out-dir sessions/run1

    # Apply a stored calibration (CalibrationParameters fields or an
    # initial-calibration record) plus a pre-recording result:
    python sensor_runner.py --replay capture.csv --out-dir sessions/run1 \
        --calibration calibration.json --pre-recording pre_recording.json

    # Offline, 4x faster than real time:
    python sensor_runner.py --replay capture.csv --out-dir sessions/run1 --no-ntp --speed 4

Capture format (CSV with header):
    timestamp_ms,sensor,x,y,z
    0,accelerometer,0.01,0.02,9.81
    3,gyroscope,0.001,0.000,-0.002
"""
import argparse
import asyncio
import json
import logging
import signal
import sys
from pathlib import Path

from road_recorder.coordinator import ClockConfig, ClockSynchronizer, NtpTimeProvider
from road_recorder.errors import CalibrationError, SessionStateError
from road_recorder.pipeline import RecordingPipeline
from road_recorder.sensors.imu.calibration import CalibrationParameters
from road_recorder.sensors.imu.config import ImuConfig
from road_recorder.sensors.imu.feeds import CsvReplayFeed
from road_recorder.storage import CsvFileStorage

LOG_FORMAT = '%(asctime)s [%(levelname)s] %(name)s: %(message)s'

logger = logging.getLogger('sensor_runner')


def parse_args(argv=None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Replay a raw IMU capture into a recording session")
    parser.add_argument('--replay', required=True, type=Path, help="Raw capture CSV")
    parser.add_argument('--out-dir', required=True, type=Path, help="Session directory to write")
    parser.add_argument('--calibration', type=Path, help="Calibration JSON file")
    parser.add_argument('--pre-recording', type=Path, help="Pre-recording calibration JSON file")
    parser.add_argument('--speed', type=float, default=1.0, help="Replay speed factor (default 1.0)")
    parser.add_argument('--rate', type=int, default=100, help="Fusion rate in Hz (default 100)")
    parser.add_argument('--mode', choices=('session', 'calibration'), default='session')
    parser.add_argument('--no-ntp', action='store_true', help="Record on device time only")
    parser.add_argument('--ntp-server', action='append', default=[],
                        help="Time server, repeatable; first is the primary")
    parser.add_argument('--log-file', type=Path, help="Also write DEBUG logs to this file")
    parser.add_argument('-v', '--verbose', action='store_true')
    return parser.parse_args(argv)


def setup_logging(args: argparse.Namespace):
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format=LOG_FORMAT,
    )
    if args.log_file:
        fh = logging.FileHandler(args.log_file)
        fh.setLevel(logging.DEBUG)
        fh.setFormatter(logging.Formatter(LOG_FORMAT))
        logging.getLogger().addHandler(fh)


def load_calibration(args: argparse.Namespace) -> CalibrationParameters:
    """Read the calibration files named on the command line."""
    if args.calibration is None:
        logger.warning("⚠ No calibration given, recording uncorrected values with threshold 0")
        return CalibrationParameters()

    payload = json.loads(args.calibration.read_text())
    pre_recording = None
    if args.pre_recording is not None:
        pre_recording = json.loads(args.pre_recording.read_text())

    if isinstance(payload, dict) and 'deviceOrientation' in payload:
        return CalibrationParameters.from_calibration_results(payload, pre_recording)
    if pre_recording is not None:
        logger.warning("⚠ --pre-recording only applies to initial-calibration records, ignoring it")
    return CalibrationParameters.from_mapping(payload)


def build_config(args: argparse.Namespace) -> ImuConfig:
    if args.mode == 'calibration':
        config = ImuConfig.for_calibration()
    else:
        config = ImuConfig.for_session()
    if args.rate != config.sample_rate:
        config.sample_rate = args.rate
        config.collection_interval = 1.0 / args.rate
    return config


async def run(args: argparse.Namespace) -> int:
    calibration = load_calibration(args)
    config = build_config(args)
    feed = CsvReplayFeed(args.replay, speed=args.speed)

    clock = None
    if not args.no_ntp:
        clock_config = ClockConfig.with_servers(*args.ntp_server) if args.ntp_server else ClockConfig()
        clock = ClockSynchronizer(NtpTimeProvider(), clock_config)

    pipeline = RecordingPipeline(feed, CsvFileStorage(), clock=clock, config=config)
    pipeline.set_write_error_callback(lambda message: logger.error(f"✗ {message}"))

    stop_requested = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop_requested.set)
        except NotImplementedError:
            pass

    async with pipeline:
        pipeline.set_calibration(calibration)
        await pipeline.start(args.out_dir)

        bumps = pipeline.subscribe_processed()
        bump_task = asyncio.create_task(_log_bumps(bumps))
        replay_task = asyncio.create_task(feed.run(close_when_done=False))
        stop_task = asyncio.create_task(stop_requested.wait())

        logger.info(f"Replaying {args.replay} ({feed.duration_s:.1f}s at {args.speed}x)")
        await asyncio.wait({replay_task, stop_task}, return_when=asyncio.FIRST_COMPLETED)
        if stop_requested.is_set():
            logger.info("Shutdown signal received, stopping session...")
            replay_task.cancel()
        else:
            # Let the last held readings produce a final tick
            await asyncio.sleep(config.collection_interval * 2)
        stop_task.cancel()

        await pipeline.stop()
        bumps.cancel()
        await asyncio.gather(replay_task, stop_task, bump_task, return_exceptions=True)

        status = pipeline.get_status()
        rate = status['sampling_rate_hz']
        logger.info(
            f"✓ Session written to {args.out_dir}: {status['writer']['total_rows_written']} rows, "
            f"{status['writer']['rows_dropped']} dropped, "
            f"{f'{rate:.1f} Hz' if rate is not None else 'rate unknown'}"
        )
        return 0 if status['writer']['rows_dropped'] == 0 else 2


async def _log_bumps(subscription):
    while True:
        try:
            async for sample in subscription:
                if sample.is_bump:
                    logger.info(f"Bump at {sample.relative_timestamp_ms} ms (magnitude {sample.accel_magnitude:.2f})")
            return
        except Exception as e:
            logger.warning(f"⚠ {e}")


def main(argv=None) -> int:
    args = parse_args(argv)
    setup_logging(args)
    logger.info(f"Sensor runner starting for {args.replay}")

    try:
        return asyncio.run(run(args))
    except (CalibrationError, json.JSONDecodeError) as e:
        logger.error(f"✗ Invalid calibration: {e}")
        return 1
    except (FileNotFoundError, SessionStateError) as e:
        logger.error(f"✗ {e}")
        return 1


if __name__ == '__main__':
    sys.exit(main())
