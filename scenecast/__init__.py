"""SceneCast: streamed, turn-based HTML adventures with a local image cache."""
