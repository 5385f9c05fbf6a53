"""Entry point for: python3 -m cadence.services.reminders"""
from cadence.services.reminders.service import main


if __name__ == "__main__":
    main()
