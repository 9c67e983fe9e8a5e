# ============================================================
# publisher.py - Émission d'événements RabbitMQ
# ------------------------------------------------------------
# Le service Access informe les autres services (tableau de
# bord admin, notifications) des accès enregistrés et des codes
# du jour générés : AccessLogged, DailyCodesGenerated.
# ============================================================
import os, json, pika
from pika.exceptions import AMQPError

from logs import get_logger

RABBIT_HOST = os.getenv("RABBITMQ_HOST", "rabbitmq")
EVENTS_ENABLED = os.getenv("EVENTS_ENABLED", "1").strip().lower() in {"1", "true", "yes", "on"}

log = get_logger("publisher")


# Cette méthode publie un message sur l'échange "events" en mode fanout :
#
#   - event_type : nom de l'événement
#   - payload    : contenu du message
#
# Tous les consommateurs liés à l'échange reçoivent le message.

def publish_event(event_type: str, payload: dict):
    if not EVENTS_ENABLED:
        log.debug("events disabled, dropping %s", event_type)
        return
    conn = pika.BlockingConnection(pika.ConnectionParameters(host=RABBIT_HOST, heartbeat=60))
    try:
        ch = conn.channel()
        # durable=True pour survivre aux redémarrages RabbitMQ
        ch.exchange_declare(exchange="events", exchange_type="fanout", durable=True)
        message = {"type": event_type, "payload": payload}
        ch.basic_publish(exchange="events", routing_key="", body=json.dumps(message))
        log.info("[event] %s %s", event_type, payload)
    finally:
        conn.close()


# Publication après commit : l'accès est déjà enregistré, une
# panne du broker ne doit pas transformer un succès en échec.
def publish_after_commit(event_type: str, payload: dict) -> bool:
    try:
        publish_event(event_type, payload)
        return True
    except AMQPError:
        log.exception("could not publish %s", event_type)
        return False
