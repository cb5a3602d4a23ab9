"""HTTP exposition of process memory metrics"""
