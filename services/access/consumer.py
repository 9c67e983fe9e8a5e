# ============================================================
# Access Service - RabbitMQ Consumer
# ------------------------------------------------------------
# Le service de gestion des membres publie sur l'échange
# "events" les inscriptions, modifications de profil et
# d'abonnement. Ce module en tient une réplique locale
# (tables profiles / memberships) pour que le contrôle d'accès
# ne dépende d'aucun appel réseau au moment du scan :
#   - MemberRegistered / ProfileUpdated : upsert du profil
#   - MembershipUpdated : upsert de l'abonnement
#   - MemberDeleted : suppression en cascade
# Un messageId déjà traité est ignoré (ProcessedMessage).
# ============================================================
import json, time
from datetime import datetime
from typing import Optional

import pika
from sqlalchemy.exc import SQLAlchemyError
from sqlmodel import Session

from db import engine
from logs import get_logger
from publisher import RABBIT_HOST
from repository import MembershipRepository, ProfileRepository, ProcessedMessageRepository
from timeutils import as_utc

log = get_logger("consumer")

PROFILE_FIELDS = {
    "fullName": "full_name",
    "email": "email",
    "phone": "phone",
    "qrCode": "qr_code",
    "role": "role",
}
MEMBERSHIP_FIELDS = {
    "type": "type",
    "status": "status",
    "startDate": "start_date",
    "endDate": "end_date",
}
DATE_FIELDS = {"start_date", "end_date"}


def _pick(payload: dict, mapping: dict) -> dict:
    fields = {}
    for key, column in mapping.items():
        if key in payload:
            value = payload[key]
            if column in DATE_FIELDS and isinstance(value, str):
                value = as_utc(datetime.fromisoformat(value))
            fields[column] = value
    return fields


# ID de message fourni par l'émetteur, sinon None : sans lui on ne
# peut pas distinguer une redélivrance d'une nouvelle modification
def message_id_of(msg: dict) -> Optional[str]:
    if msg.get("messageId"):
        return str(msg["messageId"])
    return None


def handle_event(s: Session, msg: dict) -> bool:
    etype = msg.get("type")
    payload = msg.get("payload", {})
    member_id = payload.get("memberId")
    if etype not in ("MemberRegistered", "ProfileUpdated", "MembershipUpdated", "MemberDeleted"):
        return False
    if not member_id:
        log.warning("skipping %s (no memberId)", etype)
        return False

    processed = ProcessedMessageRepository(s)
    mid = message_id_of(msg)
    if mid is not None and processed.already_processed(mid):
        log.info("already processed %s, skipping", mid)
        return False

    if etype in ("MemberRegistered", "ProfileUpdated"):
        ProfileRepository(s).upsert(member_id, **_pick(payload, PROFILE_FIELDS))
    elif etype == "MembershipUpdated":
        MembershipRepository(s).upsert(
            payload.get("membershipId"), user_id=member_id, **_pick(payload, MEMBERSHIP_FIELDS)
        )
    elif etype == "MemberDeleted":
        if not ProfileRepository(s).delete_cascade(member_id):
            log.info("member %s already absent", member_id)

    # upserts et suppression sont idempotents : sans messageId on applique
    if mid is not None:
        processed.mark_processed(mid)
    log.info("applied %s for member %s", etype, member_id)
    return True


# Callback exécuté à chaque message reçu depuis RabbitMQ
def on_message(ch, method, properties, body):
    try:
        msg = json.loads(body)
    except ValueError as e:
        log.warning("bad payload: %s", e)
        return
    if not isinstance(msg, dict):
        return
    with Session(engine) as s:
        try:
            handle_event(s, msg)
        except (KeyError, TypeError, ValueError) as e:
            s.rollback()
            log.warning("dropping malformed %s: %s", msg.get("type"), e)
        except SQLAlchemyError:
            s.rollback()
            log.exception("could not apply %s", msg.get("type"))


#  Boucle de connexion + consommation RabbitMQ
def start_consumer():
    attempt = 0
    while True:
        try:
            log.info("connecting to rabbitmq at %s...", RABBIT_HOST)
            conn = pika.BlockingConnection(pika.ConnectionParameters(host=RABBIT_HOST, heartbeat=60))
            ch = conn.channel()
            # Déclare l'échange 'events' de type fanout (broadcast)
            ch.exchange_declare(exchange="events", exchange_type="fanout", durable=True)
            # Queue anonyme, exclusive à ce consumer
            q = ch.queue_declare(queue="", exclusive=True).method.queue
            ch.queue_bind(exchange="events", queue=q)
            log.info("bound to exchange 'events' queue='%s'. waiting for messages...", q)
            attempt = 0
            ch.basic_consume(queue=q, on_message_callback=on_message, auto_ack=True)
            ch.start_consuming()
        except Exception as e:
            attempt += 1
            wait = min(5 * attempt, 30)
            log.error("connection error: %s, retrying in %ss", e, wait)
            time.sleep(wait)
