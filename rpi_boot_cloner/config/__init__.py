"""Configuration for rpi-boot-cloner."""
