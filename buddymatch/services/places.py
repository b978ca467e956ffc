from buddymatch.constants import PLACES
from buddymatch.errors import InvalidInput, NotFound
from buddymatch.schemas import Place
from buddymatch.store.base import DocumentStore, Transaction


async def get_place(store: DocumentStore, place_id: str) -> Place:
    """Load a meeting place that can still be chosen."""
    if not place_id:
        raise InvalidInput("Place ID is required")
    data = await store.get(PLACES, place_id)
    if data is None:
        raise NotFound(f"Place {place_id} not found")
    place = Place.from_document(data)
    if not place.active:
        raise InvalidInput(f"Place {place_id} is no longer available")
    return place


async def save_place(store: DocumentStore, place: Place) -> Place:
    async def body(txn: Transaction) -> Place:
        txn.set(PLACES, place.place_id, place.to_document())
        return place

    return await store.run_transaction(body)
