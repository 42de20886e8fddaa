"""Provider events, the codex and wrapper-process adapters, and the provider manager."""