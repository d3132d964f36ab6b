"""Integration data cache: discriminator resolution, keyed locks and single-flight fetches."""
