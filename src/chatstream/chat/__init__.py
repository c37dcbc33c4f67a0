"""Chat turn assembly, hydration, and orchestration."""
