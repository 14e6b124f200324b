import asyncio
import os

from motor.motor_asyncio import AsyncIOMotorClient

from database import use_database, create_indexes
from models.common import UserRole
from models.order import ProductCreate
from models.rider import RiderCreate
from services import order_service, rider_service, user_service

MONGO_URL = os.environ.get("MONGO_URL", "mongodb://localhost:27017")
DB_NAME = os.environ.get("DB_NAME", "captain_compost")
SEED_PASSWORD = os.environ.get("SEED_PASSWORD", "compost-demo-2024")

# Comptes de démonstration (mot de passe commun : SEED_PASSWORD)
TEST_USERS = [
    {"email": "admin@captaincompost.co.ke",    "full_name": "Jane Wanjiru (Admin)",  "role": UserRole.ADMIN,    "phone": "0700000001"},
    {"email": "dispatch@captaincompost.co.ke", "full_name": "Peter Otieno (Dispatch)", "role": UserRole.DISPATCH, "phone": "0700000002"},
    {"email": "farmer@captaincompost.co.ke",   "full_name": "Mary Njeri (Farmer)",   "role": UserRole.FARMER,   "phone": "0712345678"},
]

TEST_RIDERS = [
    {"name": "Agent Mike",  "phone_number": "0722000111", "vehicle_type": "motorbike"},
    {"name": "Agent Grace", "phone_number": "0722000222", "vehicle_type": "pickup"},
]

TEST_PRODUCTS = [
    {"name": "Organic Compost (50 kg bag)", "price_per_kg": 25.0},
    {"name": "Compost Pellets",             "price_per_kg": 40.0},
]


async def seed():
    print(f"🔌 Connexion à MongoDB : {DB_NAME}")
    client = AsyncIOMotorClient(MONGO_URL, tz_aware=True)
    db = client[DB_NAME]
    use_database(db)
    await create_indexes()

    print("\n---------- COMPTES ------------")
    for u in TEST_USERS:
        existing = await db.profiles.find_one({"email": u["email"]})
        if existing:
            await db.profiles.update_one({"_id": existing["_id"]}, {"$set": {"role": u["role"].value}})
            print(f"⏩ {u['role'].value.upper():<9} ({u['email']}) existe déjà.")
            continue
        await user_service.create_profile(
            email=u["email"],
            password=SEED_PASSWORD,
            full_name=u["full_name"],
            phone_number=u["phone"],
            location="Kiambu",
            role=u["role"],
        )
        print(f"✅ Créé : {u['role'].value.upper():<9} -> {u['email']}")

    print("\n---------- RIDERS ------------")
    for r in TEST_RIDERS:
        if await db.riders.find_one({"name": r["name"]}):
            print(f"⏩ {r['name']} existe déjà.")
            continue
        await rider_service.create_rider(RiderCreate(**r))
        print(f"✅ Rider : {r['name']}")

    print("\n---------- PRODUITS ------------")
    for p in TEST_PRODUCTS:
        if await db.products.find_one({"name": p["name"]}):
            print(f"⏩ {p['name']} existe déjà.")
            continue
        await order_service.create_product(ProductCreate(**p))
        print(f"✅ Produit : {p['name']} ({p['price_per_kg']:g} KES/kg)")

    print("\n-------------------------------------------")
    print("🚀 TERMINÉ ! DONNÉES DE DÉMO CRÉÉES OU MISES À JOUR.")
    client.close()


if __name__ == "__main__":
    asyncio.run(seed())
