"""fleetpush agent — runs on each managed machine.

  - ws_client: connection to the coordination server
  - downloader: fetches packages and verifies their SHA-256
  - agent: turns install commands into status reports
"""
