"""In-memory session store and its SQLite persistence."""