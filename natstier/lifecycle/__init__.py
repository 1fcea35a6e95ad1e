"""Retention enforcement and orphaned-metadata cleanup across tiers."""