"""Serverless handler for the Procura API.

Lifespan is off here, so the closure scheduler does not run inside the
function; run ``procura scheduler`` (or hit the admin sweep endpoint on a
timer) alongside it.
"""

from mangum import Mangum
from procura.api import create_app

# Mangum adapter for ASGI -> AWS Lambda/Vercel
handler = Mangum(create_app(), lifespan="off")
