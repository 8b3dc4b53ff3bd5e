#!/usr/bin/env python3
"""
Adaptive Listing Search Demo - shows how ranking changes as the engine learns.

Uses an in-memory learning store, so nothing is written to disk.
"""

import sys
from pathlib import Path

sys.path.insert(0, str(Path(__file__).parent.parent))

from adaptive_search import Interaction, LearningStore, SelfLearningSearchEngine

LISTINGS = [
    {"id": "shop-1", "title": "Магазин в центре", "description": "Витрина на первую линию",
     "area": 80, "price": 100000, "location": "Центр города", "type": "Магазин", "floor": 1},
    {"id": "office-1", "title": "Офис у метро", "description": "Open space, переговорная",
     "area": 45, "price": 60000, "location": "Метро Сокол", "type": "Офис", "floor": 5},
    {"id": "storage-1", "title": "Склад класса B", "description": "Рампа, высокие потолки",
     "area": 300, "price": 150000, "location": "Промзона", "type": "Склад", "has_storage": True},
    {"id": "storage-2", "title": "Склад с офисом", "description": "Охрана, парковка для фур",
     "area": 320, "price": 155000, "location": "Промзона", "type": "Склад",
     "has_storage": True, "has_parking": True},
    {"id": "cafe-1", "title": "Кафе с террасой", "description": "Вытяжка, летняя веранда",
     "area": 120, "price": 180000, "location": "Центр, набережная", "type": "Ресторан"},
]


def show(engine, query, session):
    print(f"\n   Query: '{query}'")
    response = engine.search_with_details(query, LISTINGS, session)
    if not response.results:
        print("   → no matching listings")
    for ranked in response.results:
        factors = ", ".join(sorted(ranked.matched_factors)) or "-"
        print(f"   → {ranked.item.id:<10} final={ranked.final_score:6.1f} "
              f"score={ranked.score:6.1f} [{factors}]")


def demo_learning_search():
    """Demonstrate ranking, feedback and learned bonuses."""
    print("🚀 **Adaptive Listing Search Demonstration**")
    print("=" * 60)

    engine = SelfLearningSearchEngine(LearningStore(), enable_metrics=False)
    engine.start()
    session = engine.new_session()

    print("\n1. 🔎 **Initial ranking**")
    show(engine, "склад с парковкой", session)
    show(engine, "небольшой магазин в центре", session)

    print("\n2. 🖱️  **Clicks teach query associations**")
    show(engine, "склад с парковкой", session)
    engine.record_click("storage-2", session)
    show(engine, "склад с парковкой рядом", session)

    print("\n3. 📈 **Repeated interest raises popularity**")
    for _ in range(4):
        engine.record_interaction(Interaction(query="большой склад", clicked_item_ids=("storage-1",)))
    show(engine, "склад", session)

    print("\n4. ⭐ **Ratings move all feature weights**")
    engine.search("кафе", LISTINGS, session)
    for rating in (1, 1, 2):
        engine.record_feedback(rating, session)
    stats = engine.get_learning_stats()
    print(f"   → exact_match weight: {stats.learned_weights['exact_match']}")
    print(f"   → logged interactions: {stats.total_queries}")
    print(f"   → top patterns: {stats.top_patterns}")

    print("\n" + "=" * 60)
    print("🎉 **Demo Complete!**")


if __name__ == "__main__":
    demo_learning_search()
