from slowapi import Limiter
from slowapi.util import get_remote_address

# Partagé entre main.py (state + handler) et les routers décorés
limiter = Limiter(key_func=get_remote_address)
