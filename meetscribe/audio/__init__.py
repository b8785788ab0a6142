"""Audio capture, mixing and recording cycles."""
