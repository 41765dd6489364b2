"""TravelPet: commuter train trip planning with departure reminders."""

__version__ = "0.1.0"
