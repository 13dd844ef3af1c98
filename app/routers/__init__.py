# Routers module for the reconciliation & ticket-issuance engine
from app.routers import tickets
from app.routers import reconciliation
