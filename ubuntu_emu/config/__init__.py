"""Configuration for ubuntu-emu."""
