#!/usr/bin/env python3
"""
Habit Guard - Block distracting websites while scheduled habits are overdue.

A background daemon watches the habit tracker database. As soon as any habit
is past its start time without being completed or skipped for the day, the
configured websites are redirected to 127.0.0.1 in the hosts file; once every
overdue habit is resolved, the block is removed again.

Usage:
    python main.py run                      # Run the daemon in the foreground
    python main.py run --daemon             # Detach and run in the background
    python main.py refresh                  # Ask a running daemon to re-check now
    python main.py reset                    # Emergency unblock
    python main.py status                   # Show what is currently blocked
    python main.py restore                  # Reinstall the newest hosts backup
"""

from habitguard.utils.daemon import main

if __name__ == "__main__":
    main()
