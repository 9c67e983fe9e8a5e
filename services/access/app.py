# ============================================================
#  Access Service
# ------------------------------------------------------------
# Ce microservice gère le contrôle d'accès à la salle :
# codes QR du jour, scans d'entrée / sortie et journal des
# présences. Il expose une API REST et écoute en arrière-plan
# les événements membres publiés sur RabbitMQ (consumer.py).
# ============================================================
import threading

from fastapi import FastAPI
from sqlmodel import SQLModel

import models  # enregistre les tables dans SQLModel.metadata
from api import router
from consumer import start_consumer
from db import engine
from logs import setup_logging
from publisher import EVENTS_ENABLED

log = setup_logging()

app = FastAPI(title="Gym Access Service")


# Exécuté automatiquement au lancement du service :
#  1. Crée les tables SQL si elles n'existent pas encore.
#  2. Lance un thread secondaire pour écouter RabbitMQ sans
#     bloquer l'API.

@app.on_event("startup")
def startup():
    SQLModel.metadata.create_all(engine)
    if EVENTS_ENABLED:
        threading.Thread(target=start_consumer, daemon=True).start()
    log.info("access service started (events %s)", "on" if EVENTS_ENABLED else "off")


@app.get("/health")
def health():
    return {"ok": True}


app.include_router(router)
