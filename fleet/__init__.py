"""Optical drive fleet health monitoring and bus recovery."""
