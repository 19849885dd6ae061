#!/usr/bin/env python3
# -*- coding: utf-8 -*-

"""
Script Variables Utils

配置与日志工具模块
"""
