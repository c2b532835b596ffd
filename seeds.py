from rental_bookings import create_app
from rental_bookings.models.store import Store


def ensure_vehicle(store: Store, vehicle_id: str, **fields):
    """
    Ensure a vehicle with `vehicle_id` exists in the store.
    - If exists: leave it alone (idempotent).
    - If not:   create it.
    """
    if store.get_vehicle(vehicle_id):
        return vehicle_id
    return store.create_vehicle({"vehicle_id": vehicle_id, **fields})


def main():
    app = create_app()
    with app.app_context():
        store = Store.instance(app.config["DATA_PATH"])

        # ---- Demo vehicles ----
        ensure_vehicle(store, "veh-swift", make="Maruti Suzuki", model="Swift", type="car",
                       price_per_day=1400, pickup_charge=200, dropoff_charge=200)
        ensure_vehicle(store, "veh-i20", make="Hyundai", model="i20", type="car",
                       price_per_day=1600, pickup_charge=250, dropoff_charge=250)
        ensure_vehicle(store, "veh-activa", make="Honda", model="Activa 6G", type="scooter",
                       price_per_day=450)

        store.save()

        print("Seed complete.")
        for v in store.vehicles.values():
            print(f"  {v.vehicle_id}: {v.make} {v.model} @ {v.price_per_day}/day")


if __name__ == "__main__":
    main()
