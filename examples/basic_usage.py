"""
chipsettle: Basic Usage Example

Demonstrates:
- Recording a session in memory
- Optimizing, validating and proving a settlement
- Exporting the proof for players
- Flagging a manual chip adjustment
"""

from chipsettle import AdjustmentType, Algorithm, Ed25519KeyManager, InMemorySource, SettlementContext


def main():
    """Basic chipsettle usage."""

    print("=" * 60)
    print("chipsettle: Basic Usage Example")
    print("=" * 60)
    print()

    # 1️⃣ Record the game
    print("1️⃣ Recording Friday's game...")
    source = InMemorySource()
    source.add_session("friday", "Friday game")
    for player_id, name, chips in [
        ("alice",   "Alice",   180),
        ("bob",     "Bob",     150),
        ("charlie", "Charlie", 20),
        ("diana",   "Diana",   50),
    ]:
        source.add_player("friday", player_id, name, chips)
        source.buy_in("friday", player_id, 100)
    print("✅ 4 players, 400.00 in buy-ins")
    print()

    # 2️⃣ Settle: optimize → validate → prove
    print("2️⃣ Settling...")
    context = SettlementContext.create(source, key_manager=Ed25519KeyManager.generate())
    try:
        run = context.settle("friday", Algorithm.MINIMAL).unwrap()
        result = run.result
        print(f"  Direct settlement would take {len(result.direct_payments)} payments")
        print(f"  Optimized plan takes {len(result.optimized_payments)}:")
        for p in result.optimized_payments:
            print(f"    {p.priority}. {p.from_name} pays {p.to_name} {p.amount}")
        print(f"✅ Validation: {'passed' if run.validation.is_valid else 'FAILED'}")
        print()

        # 3️⃣ Export the proof
        print("3️⃣ Proof for the group chat:")
        print()
        print(context.exporter.render(run.proof, "compact"))
        print()
        integrity = context.proofs.verify(run.proof)
        print(f"✅ Proof {run.proof.proof_id} verifies: {integrity.is_valid}")
        print()

        # 4️⃣ A late chip recount
        print("4️⃣ Recording a chip recount...")
        warnings = context.monitor.record_manual_adjustment(
            "friday", "alice", AdjustmentType.CHIP_COUNT, "0.15", actor="dealer", reason="recount",
        ).unwrap()
        for w in warnings:
            print(f"  ⚠️  {w.severity.value.upper()}: {w.message}")
            if w.auto_correction:
                for c in w.auto_correction.corrections:
                    print(f"      {c.name}: {c.original_chips} → {c.suggested_chips}")
        print(f"✅ Can settle: {context.monitor.can_settle('friday')}")
    finally:
        context.close()

    print()
    print("=" * 60)
    print("✅ Basic usage complete!")
    print("=" * 60)
    print()
    print("Next steps:")
    print("  - Settle a snapshot file: chipsettle optimize game.json")
    print("  - Write a proof:          chipsettle prove game.json --export structured -o proof.json")
    print("  - Check it anywhere:      chipsettle verify proof.json")


if __name__ == "__main__":
    main()
