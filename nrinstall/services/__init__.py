"""Support services: retry policy and asynchronous installation requests"""
