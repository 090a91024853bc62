import threading
import time


def run_janitor_pass(service) -> dict:
    """One cleanup pass. Returns the ChatService.sweep() counters."""
    counts = service.sweep()
    if counts.get("guests"):
        print(f"[JANITOR] removed {counts['guests']} disconnected guests")
    if counts.get("sessions"):
        print(f"[JANITOR] purged {counts['sessions']} expired sessions")
    if counts.get("ip_bans"):
        print(f"[JANITOR] lifted {counts['ip_bans']} expired IP bans")
    return counts


def start_janitor(settings: dict, service):
    """Start a lightweight background cleanup loop.

    - Flips inactive online users to idle (presence sweep)
    - Destroys guests that have been disconnected past the grace period
    - Purges expired sessions and IP bans
    """

    def _loop():
        while True:
            # Re-read settings each cycle so config reloads take effect live.
            try:
                interval = int(settings.get("janitor_interval_seconds", 15))
            except (TypeError, ValueError):
                interval = 15
            interval = max(1, min(interval, 3600))

            try:
                run_janitor_pass(service)
            except Exception as e:
                print(f"[JANITOR] sweep error: {e}")

            time.sleep(interval)

    t = threading.Thread(target=_loop, name="tonkotsu_janitor", daemon=True)
    t.start()
    return t
