"""Client-side peer session controller and channel supervision."""
