"""Domain services. Each public function is one unit of work."""
