#!/usr/bin/env python3
"""
Robot Guidance Simulator Startup Script

This script starts the guidance simulator using a JSON configuration file.
Scene, sensor, robot and service settings all come from the file.
"""

import sys
import os
import logging
import time
import argparse

from guidance.correction import ControlLoop, SystemConfig
from guidance.correction.scene import resolve_asset_path


def validate_config_files(system_config: SystemConfig) -> bool:
    """
    Validate that all files referenced by the configuration exist.

    Args:
        system_config: Loaded system configuration

    Returns:
        True if all files exist
    """
    required_files = [system_config.resolve(system_config.urdf_path)]
    for entry in system_config.scene_objects:
        texture = entry.get('texture')
        if texture:
            required_files.append(str(resolve_asset_path(texture, system_config.base_dir)))

    missing_files = [path for path in required_files if not os.path.exists(path)]
    if missing_files:
        print("Missing required configuration files:")
        for file in missing_files:
            print(f"  - {file}")
        return False

    return True


def main():
    """Main function."""
    parser = argparse.ArgumentParser(
        description="Robot Guidance Simulator",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Configuration files:
  The simulator requires a JSON configuration file describing the robot,
  the range sensor, the scene and the external services.

Examples:
  %(prog)s --config system_config.json
  %(prog)s --config system_config.json --verbose
  %(prog)s --validate-only
        """
    )

    parser.add_argument(
        '--config', '-c',
        default=os.path.join(os.path.dirname(__file__), '..', 'config', 'system_config.json'),
        help='Path to system configuration file (default: config/system_config.json)'
    )

    parser.add_argument(
        '--verbose', '-v',
        action='store_true',
        help='Enable verbose logging'
    )

    parser.add_argument(
        '--validate-only',
        action='store_true',
        help='Only validate configuration files, do not start the simulator'
    )

    parser.add_argument(
        '--rate',
        type=float,
        default=None,
        help='Override the control loop rate in Hz'
    )

    parser.add_argument(
        '--capture-master',
        action='store_true',
        help='Capture and save a master cloud right after startup'
    )

    args = parser.parse_args()

    # Set up logging
    log_level = logging.DEBUG if args.verbose else logging.INFO
    logging.basicConfig(
        level=log_level,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )

    print("Robot Guidance Simulator")
    print("=" * 50)

    print(f"Loading system configuration from: {args.config}")

    if not os.path.exists(args.config):
        print(f"Error: Configuration file not found: {args.config}")
        return 1

    try:
        config = SystemConfig.from_json(args.config)
        if args.rate is not None:
            config.processing_rate = args.rate
        print("✓ System configuration loaded successfully")

        print(f"  Robot: {config.urdf_path} (tool link {config.tool_link})")
        print(f"  Sensor: {config.sensor.width}x{config.sensor.height}, "
              f"fov={config.sensor.fov_deg}°, mount={config.sensor.mount_type.value}")
        print(f"  Scene objects: {len(config.scene_objects)}")
        if config.services_enabled:
            print(f"  Services: {config.services_host}:{config.services_port}")
        else:
            print("  Services: disabled")
        print(f"  Thresholds: error={config.guidance.error_threshold}m, "
              f"scan clear={config.guidance.scan_clear_distance}m/{config.guidance.scan_clear_angle_deg}°")

    except Exception as e:
        print(f"Error loading system configuration: {e}")
        return 1

    print("\nValidating configuration files...")
    if not validate_config_files(config):
        print("✗ Configuration validation failed")
        return 1

    print("✓ Configuration validation passed")

    if args.validate_only:
        print("\nValidation complete (--validate-only specified)")
        return 0

    print("\nBuilding simulator...")
    try:
        loop = ControlLoop.from_config(config)
    except Exception as e:
        print(f"✗ Failed to build simulator: {e}")
        return 1

    print(f"✓ Robot loaded with {loop.frame_store.joint_count} joints")
    if loop.sensor.master.is_empty:
        print("  No master cloud loaded; capture one before running guidance")
    else:
        print(f"✓ Master cloud loaded with {len(loop.sensor.master)} points")

    if args.capture_master:
        loop.request_master_capture()

    print("\nStarting control loop...")
    if not loop.start():
        print("✗ Failed to start control loop")
        return 1

    print("✓ Control loop started")
    try:
        print("\n" + "=" * 50)
        print("Simulator running.")
        print("Press Ctrl+C to stop.\n")

        last_status_time = 0
        status_interval = 5.0

        while True:
            time.sleep(0.1)

            current_time = time.time()
            if current_time - last_status_time >= status_interval:
                status = loop.get_system_status()
                stats = status['statistics']
                guidance = status['guidance']

                print(f"Status: Running={status['running']}, "
                      f"Phase={guidance['phase']}, Guard={status['guard_state']}")
                print(f"Tool: {status['tool_position_base']}")
                print(f"Stats: Ticks={stats['ticks']}, "
                      f"Guidance runs={guidance['statistics']['guidance_runs']}, "
                      f"Corrections={guidance['statistics']['corrections_applied']}")
                if status['colliding_links']:
                    print(f"Colliding: {', '.join(status['colliding_links'])}")
                print("-" * 30)
                last_status_time = current_time

    except KeyboardInterrupt:
        print("\nShutting down simulator...")
        loop.stop()
        print("✓ Simulator stopped")
        return 0


if __name__ == "__main__":
    sys.exit(main())
