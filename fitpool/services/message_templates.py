"""WhatsApp message content for pool assignment, reminders and registration."""

from __future__ import annotations

from typing import Optional

from fitpool.clients.base import Message
from fitpool.domain.models import Event, TriggerType
from fitpool.domain.time_windows import parse_event_date
from fitpool.utils.config import Settings, get_settings


_REGISTRANT_CHECKLIST = """Get Ready for Your Session - Quick Check!
Here's how to ensure you're all set to go:
- Strong Wi-Fi: Aim for 30 Mbps+ for smooth streaming.
- Zoom Login: Use your registered email to access the session.
- Screen Choice: Smart TV or laptop works best (mobile if needed).
- Crisp Audio: Plug in your speakers or headphones for clear sound.
- Clear Space: Make room to move freely and keep water nearby.
- Comfy Gear: Dress to move, stretch, and sweat with ease!

Let's make this session awesome!"""

_FACILITATOR_CHECKLIST = """Hi {name}, quick reminder before your session
1. Test your tech - Audio, video, and Wi-Fi.
2. Playlist ready? - Keep it set and shareable.
3. Clear your space - Room to move freely.
4. Light it up - Make sure you're well-lit.
5. Stay engaging - Use clear cues and keep it fun.
6. Keep water nearby - Stay hydrated.
7. Be early - Log in a few mins before.
8. Have a backup plan - Just in case tech glitches.
9. Bring the vibe! - Energy and smiles all the way!"""

_TROUBLESHOOTING = """Check the following, before reaching out for help -
1- Check Internet: Is your Wi-Fi or data connection stable?
2- Verify Link: Are you using the correct Zoom meeting link?
3- Zoom App: Is the Zoom app installed and up-to-date?
4- Email Match: Are you logged into the Zoom app with the email you used for registration (if required)?
5- Password: If prompted, is your Zoom account password correct?
6- Restart: Try closing and reopening the Zoom app.
7- Device Restart: If still stuck, try restarting your device."""

_POST_EVENT_MESSAGES = (
    "Please rate your satisfaction with the event on a scale of 1 (Very Unsatisfied) "
    "to 5 (Very Satisfied). Your feedback is important to us.",
    "Hello again, {name}, ready for another great session?",
    "Your well-being is important, please consider any health conditions before "
    "engaging in physical activity.",
)


def format_event_day(event_date: str) -> str:
    """``2026-10-24`` -> ``Saturday, October 24``; unparsable input is returned as-is."""
    day = parse_event_date(event_date)
    if day is None:
        return event_date
    return f"{day:%A}, {day:%B} {day.day}"


def _link_block(meeting_link: str | None) -> str:
    if not meeting_link:
        return ""
    return f"\n\nMeeting Link:\n{meeting_link}"


class MessageCatalog:
    """Builds the ordered message list each recipient receives."""

    def __init__(self, settings: Optional[Settings] = None) -> None:
        self._settings = settings or get_settings()

    def _template(self, name: str, parameters: list[str]) -> Message:
        return Message.template(name, parameters, language=self._settings.whatsapp_template_language)

    def pool_assigned_for_registrant(
        self,
        *,
        event: Event,
        facilitator_name: str | None,
        meeting_link: str | None,
    ) -> list[Message]:
        lines = [
            "Mark your calendars!",
            "",
            f"*{event.title}* - {format_event_day(event.event_date)}",
            "",
            "Your pool details:",
        ]
        if facilitator_name:
            lines.append(f"Trainer: {facilitator_name}")
        lines.append(f"Time: {event.event_time or 'TBA'}")
        body = "\n".join(lines) + _link_block(meeting_link)
        body += "\n\nGet ready for an amazing session! See you there!"
        return [Message.plain(body)]

    def pool_assigned_for_facilitator(
        self,
        *,
        event: Event,
        pool_name: str,
        attendee_count: int,
        meeting_link: str | None,
    ) -> list[Message]:
        body = "\n".join(
            [
                "New Pool Assignment Alert!",
                "",
                f"*{event.title}*",
                f"Date: {format_event_day(event.event_date)}",
                f"Time: {event.event_time or 'TBA'}",
                f"Pool: {pool_name}",
                f"Students: {attendee_count}",
            ]
        )
        body += _link_block(meeting_link)
        body += "\n\nPlease be ready to conduct the session!"
        return [Message.plain(body)]

    def reminder_for_registrant(
        self,
        trigger: TriggerType,
        *,
        event: Event,
        registrant_name: str,
        meeting_link: str | None,
    ) -> list[Message]:
        if trigger is TriggerType.T_MINUS_48H:
            if meeting_link:
                return [
                    self._template(
                        self._settings.whatsapp_user_reminder_template,
                        [event.title, meeting_link],
                    )
                ]
            return [
                Message.plain(
                    f"Reminder: *{event.title}* is on {format_event_day(event.event_date)}"
                    f" at {event.event_time or 'TBA'}."
                )
            ]
        if trigger is TriggerType.T_MINUS_24H:
            return [Message.plain(_REGISTRANT_CHECKLIST)]
        if trigger is TriggerType.T_MINUS_60M:
            return [self._template(self._settings.whatsapp_help_template, [])]
        return [
            Message.plain(text.format(name=registrant_name)) for text in _POST_EVENT_MESSAGES
        ]

    def reminder_for_facilitator(
        self,
        trigger: TriggerType,
        *,
        event: Event,
        facilitator_name: str,
        meeting_link: str | None,
    ) -> list[Message]:
        if trigger is TriggerType.T_MINUS_48H:
            if meeting_link:
                return [
                    self._template(
                        self._settings.whatsapp_trainer_reminder_template,
                        [facilitator_name, event.title, event.event_time or "TBA", meeting_link],
                    )
                ]
            return [
                Message.plain(
                    f"Hi {facilitator_name}, reminder: *{event.title}* is on "
                    f"{format_event_day(event.event_date)} at {event.event_time or 'TBA'}."
                )
            ]
        if trigger is TriggerType.T_MINUS_24H:
            return [Message.plain(_FACILITATOR_CHECKLIST.format(name=facilitator_name))]
        if trigger is TriggerType.T_MINUS_60M:
            return [Message.plain(_TROUBLESHOOTING + _link_block(meeting_link))]
        # Facilitators receive no post-event survey.
        return []

    def registration_confirmed(
        self,
        *,
        event: Event,
        registrant_name: str,
        amount: float | None = None,
    ) -> list[Message]:
        lines = [
            f"Hi {registrant_name}, you're registered for *{event.title}*!",
            f"Date: {format_event_day(event.event_date)}",
            f"Time: {event.event_time or 'TBA'}",
        ]
        if amount:
            lines.append(f"Amount paid: {self._settings.invoice_currency} {amount:,.2f}")
        lines.append("Your pool and meeting link will be shared once registration closes.")
        return [Message.plain("\n".join(lines))]
