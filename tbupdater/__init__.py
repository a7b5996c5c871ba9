"""Keep a Thunderbird installation current with atomic, verified updates."""
