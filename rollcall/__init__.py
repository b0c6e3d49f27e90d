"""Face-recognition core of the school attendance terminal."""
