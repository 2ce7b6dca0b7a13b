"""
This module renders a collector's upcoming pickups as an iCalendar feed.
"""
from datetime import datetime, timedelta
from typing import Iterable

from icalendar import Calendar, Event

from .models import AssignedRequest, CollectedRequest, WasteRequest

PRODID = "-//EcoPickup//Collector Schedule//EN"


def build_collector_calendar(
    collector_name: str, requests: Iterable[WasteRequest], generated_at: datetime
) -> bytes:
    """
    Builds an ICS document with one all-day event per assigned pickup.

    Requests that are not assigned or collected are skipped.
    """
    cal = Calendar()
    cal.add("prodid", PRODID)
    cal.add("version", "2.0")
    cal.add("x-wr-calname", f"EcoPickup pickups - {collector_name}")

    for request in requests:
        if not isinstance(request, (AssignedRequest, CollectedRequest)):
            continue

        event = Event()
        event.add("uid", f"pickup-{request.id}@ecopickup")
        event.add("dtstamp", generated_at)
        event.add("dtstart", request.scheduled_date)
        event.add("dtend", request.scheduled_date + timedelta(days=1))
        summary = f"{request.waste_type.value.capitalize()} pickup ({request.quantity_kg:g}kg)"
        if isinstance(request, CollectedRequest):
            summary = f"[collected] {summary}"
        event.add("summary", summary)
        event.add("location", request.logistics.address)
        event.add(
            "geo",
            (request.logistics.coordinates.lat, request.logistics.coordinates.lng),
        )
        description = (
            f"Request #{request.id}, preferred time "
            f"{request.logistics.preferred_time.strftime('%Y-%m-%d %H:%M')}"
        )
        if request.logistics.description:
            description += f"\n{request.logistics.description}"
        event.add("description", description)
        event.add("status", "CONFIRMED")
        cal.add_component(event)

    return cal.to_ical()
