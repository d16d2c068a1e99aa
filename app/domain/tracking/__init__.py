"""Tracking domain - location pings, ETA and phase reports for active bookings"""
