"""HTTP API and request/reply responders for stored data."""