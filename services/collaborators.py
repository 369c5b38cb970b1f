"""Narrow interfaces to the external collaborators and in-memory stand-ins.

The in-memory classes record every call so flows can be exercised locally
without network access. Each one can be switched to fail to drive the error
paths.
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional, Protocol

from fpdf import FPDF
from fpdf.enums import XPos, YPos

from app.core.logging import logger
from app.db import Identity, Store
from app.errors import Unavailable
from shared.contracts.enums import NotificationChannel
from shared.contracts.models import IntakeSummary


class MessagingDispatcher(Protocol):
    def send_challenge(self, phone: str, code: str) -> str: ...

    def send_freeform(self, phone: str, text: str) -> None: ...


class IntakeSummarizer(Protocol):
    def summarize(self, raw_intake: Dict[str, Any]) -> IntakeSummary: ...


class DocumentRenderer(Protocol):
    def render_prescription(self, data: Dict[str, Any]) -> bytes: ...


class ObjectStore(Protocol):
    def put(self, content: bytes, key: str, content_type: str) -> str: ...


class Notifier(Protocol):
    def notify(
        self,
        identity_id: str,
        title: str,
        body: str,
        channel: NotificationChannel,
        data: Optional[Dict[str, str]] = None,
    ) -> None: ...


@dataclass
class SentMessage:
    to: str
    kind: str
    body: str
    message_id: str


@dataclass
class RecordingMessaging:
    sent: List[SentMessage] = field(default_factory=list)
    fail_challenges: bool = False

    def send_challenge(self, phone: str, code: str) -> str:
        if self.fail_challenges:
            raise Unavailable("Messaging dispatcher unavailable")
        message_id = f"wamid.{uuid.uuid4().hex}"
        self.sent.append(SentMessage(to=phone, kind="challenge", body=code, message_id=message_id))
        return message_id

    def send_freeform(self, phone: str, text: str) -> None:
        self.sent.append(SentMessage(to=phone, kind="freeform", body=text, message_id=f"wamid.{uuid.uuid4().hex}"))

    def last_code_for(self, phone: str) -> Optional[str]:
        for message in reversed(self.sent):
            if message.to == phone and message.kind == "challenge":
                return message.body
        return None


@dataclass
class EchoSummarizer:
    """Passes the intake through and flags a fixed set of danger keywords."""

    red_flag_terms: tuple = ("chest pain", "difficulty breathing", "unconscious", "severe bleeding")
    fail: bool = False

    def summarize(self, raw_intake: Dict[str, Any]) -> IntakeSummary:
        if self.fail:
            raise Unavailable("Intake summarizer unavailable")
        text = " ".join(str(value) for value in raw_intake.values()).lower()
        flags = [term for term in self.red_flag_terms if term in text]
        return IntakeSummary(structured_summary=dict(raw_intake), red_flags=flags)


class PdfRenderer:
    """Lays out a prescription on an A4 page with the fpdf2 core fonts."""

    font_family = "Helvetica"
    font_size = 11
    line_height = 6

    def render_prescription(self, data: Dict[str, Any]) -> bytes:
        pdf = FPDF(format="A4")
        pdf.set_title(f"Prescription {data['prescription_id']}")
        pdf.add_page()
        pdf.set_font(self.font_family, style="B", size=self.font_size + 3)
        self._write(pdf, f"Prescription {data['prescription_id']}")
        pdf.set_font(self.font_family, size=self.font_size)
        self._write(pdf, f"Prescriber {data['prescribing_clinician']}")
        self._write(pdf, f"Issued {data['issued_at']}")
        pdf.ln(self.line_height)
        for item in data["line_items"]:
            self._write(
                pdf,
                f"- {item['drug_name']} {item['strength']} {item['form']} x{item['quantity']}: {item['instructions']}",
            )
        return bytes(pdf.output())

    def _write(self, pdf: FPDF, text: str) -> None:
        # Core fonts only cover latin-1.
        safe = text.encode("latin-1", "replace").decode("latin-1")
        pdf.multi_cell(0, self.line_height, safe, align="L", new_x=XPos.LMARGIN, new_y=YPos.NEXT)


@dataclass
class RecordingRenderer:
    rendered: List[Dict[str, Any]] = field(default_factory=list)
    fail: bool = False
    renderer: PdfRenderer = field(default_factory=PdfRenderer)

    def render_prescription(self, data: Dict[str, Any]) -> bytes:
        if self.fail:
            raise Unavailable("Document renderer unavailable")
        self.rendered.append(data)
        return self.renderer.render_prescription(data)


@dataclass
class InMemoryObjectStore:
    base_url: str = "memory://documents"
    objects: Dict[str, bytes] = field(default_factory=dict)
    content_types: Dict[str, str] = field(default_factory=dict)
    fail: bool = False

    def put(self, content: bytes, key: str, content_type: str) -> str:
        if self.fail:
            raise Unavailable("Object store unavailable")
        self.objects[key] = content
        self.content_types[key] = content_type
        return f"{self.base_url}/{key}"


@dataclass
class Notification:
    identity_id: str
    title: str
    body: str
    channel: NotificationChannel
    data: Dict[str, str]


@dataclass
class RecordingNotifier:
    sent: List[Notification] = field(default_factory=list)
    fail: bool = False

    def notify(
        self,
        identity_id: str,
        title: str,
        body: str,
        channel: NotificationChannel,
        data: Optional[Dict[str, str]] = None,
    ) -> None:
        if self.fail:
            raise Unavailable("Notifier unavailable")
        self.sent.append(
            Notification(identity_id=identity_id, title=title, body=body, channel=channel, data=data or {})
        )


class MessagingNotifier:
    """Delivers notifications over the messaging dispatcher.

    In-app notifications are only logged here; the external leg goes out as
    best-effort freeform text to the identity's phone number.
    """

    def __init__(self, store: Store, messaging: MessagingDispatcher) -> None:
        self.store = store
        self.messaging = messaging

    def notify(
        self,
        identity_id: str,
        title: str,
        body: str,
        channel: NotificationChannel,
        data: Optional[Dict[str, str]] = None,
    ) -> None:
        logger.info("Notification '%s' for identity %s via %s", title, identity_id, channel.value)
        if channel == NotificationChannel.IN_APP:
            return
        with self.store.transaction() as uow:
            identity = uow.session.get(Identity, identity_id)
            phone = identity.phone_number if identity is not None else None
        if phone is None:
            logger.warning("Notification target %s has no phone number", identity_id)
            return
        self.messaging.send_freeform(phone, f"{title}\n{body}")


class LocalObjectStore:
    """Writes objects under a local directory and returns their file URI."""

    def __init__(self, root: str | Path) -> None:
        self.root = Path(root)

    def put(self, content: bytes, key: str, content_type: str) -> str:
        target = (self.root / key).resolve()
        if self.root.resolve() not in target.parents:
            raise ValueError(f"Object key escapes the store root: {key}")
        try:
            target.parent.mkdir(parents=True, exist_ok=True)
            target.write_bytes(content)
        except OSError as exc:
            raise Unavailable("Object store unavailable") from exc
        logger.info("Stored %s (%s, %s bytes)", key, content_type, len(content))
        return target.as_uri()
