"""
Drive a simulated trip against a running taximeter server.

This script demonstrates the meter API end to end without positioning hardware.
"""

import sys
import time

import requests


def show_meter(data: dict):
    trip = data["trip"]
    print(
        f"  [{data['phase']:<7}] {trip['distance_km']:6.3f} km  "
        f"{trip['waiting_time_seconds']:4d} s waiting  "
        f"{trip['cost']:8.2f} {data['currency']}"
    )


def run_simulated_trip(base_url: str = "http://localhost:8000",
                       trip_type_id: str = "normal",
                       sub_trip_id: str = None,
                       drive_seconds: int = 10,
                       wait_seconds: int = 5):
    """
    Run one simulated trip: drive, wait, drive again, stop.

    Args:
        base_url: API base URL
        trip_type_id: Trip type to select before starting
        sub_trip_id: Sub-destination for routes that have them
        drive_seconds: Seconds to drive before and after the pause
        wait_seconds: Seconds to stay paused
    """
    meter = requests.get(f"{base_url}/api/meter").json()
    if meter["phase"] != "idle":
        print("A trip is already in progress, stopping it first")
        requests.post(f"{base_url}/api/trip/stop")

    response = requests.put(f"{base_url}/api/trip-type", json={"trip_type_id": trip_type_id})
    if response.status_code != 200:
        print(f"✗ Could not select trip type: {response.text}")
        return
    if sub_trip_id:
        response = requests.put(f"{base_url}/api/sub-trip", json={"sub_trip_id": sub_trip_id})
        if response.status_code != 200:
            print(f"✗ Could not select sub-destination: {response.text}")
            return

    if not meter["simulation_mode"]:
        requests.post(f"{base_url}/api/simulation/toggle")

    print(f"Starting a simulated '{trip_type_id}' trip...")
    response = requests.post(f"{base_url}/api/trip/start")
    if response.status_code != 200:
        print(f"✗ Failed to start: {response.text}")
        return
    show_meter(response.json())

    for _ in range(drive_seconds):
        time.sleep(1)
        show_meter(requests.get(f"{base_url}/api/meter").json())

    print("\nWaiting...")
    requests.post(f"{base_url}/api/trip/pause")
    for _ in range(wait_seconds):
        time.sleep(1)
        show_meter(requests.get(f"{base_url}/api/meter").json())

    print("\nDriving on...")
    requests.post(f"{base_url}/api/trip/resume")
    for _ in range(drive_seconds):
        time.sleep(1)
        show_meter(requests.get(f"{base_url}/api/meter").json())

    summary = requests.post(f"{base_url}/api/trip/stop").json()["last_summary"]
    print("\n" + "=" * 40)
    print("TRIP SUMMARY")
    print("=" * 40)
    print(f"Trip type:  {summary['trip_type_name']}")
    if summary["sub_trip_name"]:
        print(f"Stop:       {summary['sub_trip_name']}")
    print(f"Distance:   {summary['distance_km']:.3f} km")
    print(f"Waiting:    {summary['waiting_time_seconds']} s")
    print(f"Total:      {summary['cost']:.2f}")
    print("=" * 40)


def show_usage():
    """Show usage instructions."""
    print("=" * 60)
    print("SIMULATED TRIP")
    print("=" * 60)
    print("\nStart the server first:  uvicorn taximeter.main:app")
    print("\nUsage:")
    print("  python simulate_trip.py                         # Show this help")
    print("  python simulate_trip.py run                     # Metered trip")
    print("  python simulate_trip.py run walmart             # Fixed route")
    print("  python simulate_trip.py run cristoRey cristoRey-mitad")
    print("\nQuote a fare via curl:")
    print('  curl -X POST http://localhost:8000/api/fares/quote \\')
    print('    -H "Content-Type: application/json" \\')
    print('    -d \'{"trip_type_id": "walmart", "distance_km": 6.2, "waiting_minutes": 2}\'')
    print("\n" + "=" * 60)


if __name__ == "__main__":
    if len(sys.argv) > 1 and sys.argv[1].lower() == "run":
        trip_type = sys.argv[2] if len(sys.argv) > 2 else "normal"
        sub_trip = sys.argv[3] if len(sys.argv) > 3 else None
        run_simulated_trip(trip_type_id=trip_type, sub_trip_id=sub_trip)
    else:
        show_usage()
